from __future__ import annotations


class ScalperError(Exception):
    """Base class for engine errors that callers may want to catch."""


class AdvisoryError(ScalperError):
    """External advisory failed: transport, timeout, bad schema or disallowed override."""


class PersistenceError(ScalperError):
    """Reading or writing the persisted portfolio record failed."""


class ConfigurationError(ScalperError):
    """A mode switch was requested without the configuration it needs."""


class ModeSwitchRejected(ScalperError):
    """Mode switch refused by the engine state (e.g. while trading is active)."""
