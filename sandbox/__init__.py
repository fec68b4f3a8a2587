from sandbox.errors import (
    AttachmentMissing,
    CapabilityError,
    CompileError,
    SandboxError,
    SandboxTimeout,
    ScriptRuntimeError,
)
from sandbox.compiler import compile_script, CompiledScript
from sandbox.host import CapabilityHost
from sandbox.supervisor import ExecutionSupervisor

__all__ = [
    "AttachmentMissing",
    "CapabilityError",
    "CompileError",
    "SandboxError",
    "SandboxTimeout",
    "ScriptRuntimeError",
    "compile_script",
    "CompiledScript",
    "CapabilityHost",
    "ExecutionSupervisor",
]
