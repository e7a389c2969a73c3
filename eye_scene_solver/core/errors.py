"""Exception types raised by the eye/scene solver."""


class EyeSceneError(Exception):
    """Base class for solver errors."""


class ConfigurationError(EyeSceneError, ValueError):
    """Inconsistent or empty bounds, unknown options, or missing observation fields."""


class ModelInconsistencyError(EyeSceneError, RuntimeError):
    """Eye model geometry filters removed every candidate point."""
