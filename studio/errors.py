class DecodeError(Exception):
    """The uploaded audio could not be read."""


class ExportError(Exception):
    """Encoding or archiving failed; no archive was produced."""


class SessionLimitError(RuntimeError):
    pass


class NothingToExportError(ExportError):
    """No audio is loaded or no segment is selected."""
