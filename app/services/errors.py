class MalformedPayloadError(ValueError):
    """Raised when a raw payload is not parseable as any known marriage statistics shape."""
