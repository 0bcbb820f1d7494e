import textwrap

# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Scheduling Errors


class SchedulingError(Exception):
    """
    Raised when a schedule directive cannot be applied.  The message is
    prefixed with the kind of the offending directive once the driver has
    attached it, and every keyword blob is appended as a titled section.
    """

    def __init__(self, message, directive=None, **kwargs):
        self.reason = message
        self.directive = None
        self.blobs = kwargs
        super().__init__(self._build_message())
        if directive is not None:
            self.attach(directive)

    def attach(self, directive):
        self.directive = directive
        self.args = (self._build_message(),)
        return self

    def _build_message(self):
        message = self.reason
        if self.directive is not None:
            message = f"{type(self.directive).__name__}: {message}"
        for name, blob in self.blobs.items():
            message += self._format_named_blob(name.title(), blob)
        return message

    @staticmethod
    def _format_named_blob(name, blob):
        blob = str(blob).rstrip()
        n = len(name) + 2
        blob = textwrap.indent(blob, " " * n).strip()
        return f"\n{name}: " + blob


class NotFound(SchedulingError):
    """a named stage, loop or array is absent"""


class PreconditionViolation(SchedulingError):
    """non-constant bounds, oversized or missing factors, non-normalized loops"""


class Unsupported(SchedulingError):
    """an access pattern the transformation cannot handle"""


class Infeasible(SchedulingError):
    """no legal transformation exists"""
