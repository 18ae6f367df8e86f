"""
Business errors raised by the reimbursement core.

Store and file failures are not wrapped: SQLAlchemy and OS errors reach the
run boundary unmodified.
"""


class ReimbursementError(Exception):
    """Base class for every business error of the service."""

    def __init__(self, message, detail=None):
        self.message = message
        self.detail = detail
        super().__init__(message)


class DossierValidationError(ReimbursementError):
    """A dossier broke a business rule. Aborts that dossier only."""

    def __init__(self, message, affiliation_number=None):
        self.affiliation_number = affiliation_number
        super().__init__(message, detail={"affiliation_number": affiliation_number})


class MalformedRecordError(ReimbursementError):
    """A catalog row could not be parsed. The row is skipped, the import goes on."""

    def __init__(self, message, line_number=None, raw=None):
        self.line_number = line_number
        self.raw = raw
        super().__init__(message, detail={"line_number": line_number, "raw": raw})
