"""prefs — Rule/link preferences stored by the host."""
from .bridge import PreferenceBridge
from .payload import PrefsPayload, PrefsPayloadError

__all__ = ["PreferenceBridge", "PrefsPayload", "PrefsPayloadError"]
