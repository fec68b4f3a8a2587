"""
Error taxonomy for script execution. `kind` is the stable name used on the wire.
"""


class SandboxError(Exception):
    kind = "SandboxError"


class CompileError(SandboxError):
    """Source could not be turned into a callable entry point."""
    kind = "CompileError"


class ScriptRuntimeError(SandboxError, RuntimeError):
    """Exception raised while the script ran, or inside a capability handler."""
    kind = "RuntimeError"


class SandboxTimeout(SandboxError, TimeoutError):
    """Wall-clock budget exceeded."""
    kind = "TimeoutError"


class CapabilityError(SandboxError):
    """Unknown capability method or malformed parameters."""
    kind = "CapabilityError"


class AttachmentMissing(CapabilityError):
    kind = "AttachmentMissing"


class ContextTerminated(SandboxError):
    """The execution context was torn down while a request was pending."""
    kind = "ContextTerminated"


_BY_KIND = {
    cls.kind: cls
    for cls in (SandboxError, CompileError, ScriptRuntimeError, SandboxTimeout,
                CapabilityError, AttachmentMissing, ContextTerminated)
}


def error_from_kind(kind: str | None, message: str) -> SandboxError:
    """Rebuild an error received as {error, errorKind}; unknown kinds become CapabilityError."""
    return _BY_KIND.get(kind or "", CapabilityError)(message)
