class MedFlowError(Exception):
    pass


class InvalidFormatError(MedFlowError):
    """Raised when raw transaction text has no usable header."""


class InvalidConfigError(MedFlowError):
    """Raised when agent pipeline configuration cannot be parsed."""


class ProviderError(MedFlowError):
    """Raised by model callers on transport, auth, quota or timeout failures."""
