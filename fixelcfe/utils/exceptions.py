"""Custom exceptions for fixelcfe."""


class FixelCFEError(Exception):
    """Base exception for fixelcfe."""
    pass


class ConfigurationError(FixelCFEError):
    """Error in configuration."""
    pass


class FormatError(FixelCFEError):
    """Malformed serialized connectivity matrix.

    Attributes:
        line: Full text of the offending line.
        entry: The entry within the line that could not be parsed.
        line_number: Zero-based line index (node id), if known.
        path: File being read, if known.
    """

    def __init__(self, message, line=None, entry=None, line_number=None, path=None):
        self.line = line
        self.entry = entry
        self.line_number = line_number
        self.path = path
        details = [message]
        if path is not None:
            details.append(f'File: "{path}"')
        if line_number is not None:
            details.append(f"Line number: {line_number}")
        if line is not None:
            details.append(f'Line: "{line}"')
        if entry is not None:
            details.append(f'Entry: "{entry}"')
        super().__init__("\n".join(details))


class ConsistencyError(FixelCFEError):
    """Mismatch between the dimensions of loaded inputs."""
    pass


class ConnectivityError(FixelCFEError):
    """Error during connectivity matrix construction."""
    pass


class StatisticalError(FixelCFEError):
    """Error during statistical analysis."""
    pass
