"""
Artifact namespacing and the instance registry.

Every plot id a run emits is rewritten to "<instance_id>::<id>". Writes are
staged per execution context and only reach the plot sink on commit, which
first clears everything under the instance prefix across all artifact kinds.
A run that fails, times out or is terminated never commits, so the chart
keeps the last successful output.
"""
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from libs.domain_models import ArtifactKind, RunSpec
from libs.log import get_logger
from providers.base import PlotSink
from sandbox.errors import ContextTerminated

log = get_logger("sandbox.namespace")

SEPARATOR = "::"


def namespace_prefix(instance_id: str) -> str:
    return f"{instance_id}{SEPARATOR}"


def qualify(instance_id: str, artifact_id: str) -> str:
    prefix = namespace_prefix(instance_id)
    return artifact_id if artifact_id.startswith(prefix) else prefix + artifact_id


class ArtifactStage:
    """Writes collected during one run. Later writes to the same (kind, id) replace earlier ones."""

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        self._writes: dict[tuple[ArtifactKind, str], tuple[list[dict], dict[str, Any]]] = {}
        self._open = True

    def put(self, kind: ArtifactKind, artifact_id: str, data: list[dict], opts: dict[str, Any]) -> str:
        if not self._open:
            raise ContextTerminated("artifact stage is closed")
        namespaced = qualify(self.instance_id, artifact_id)
        self._writes.pop((kind, namespaced), None)
        self._writes[(kind, namespaced)] = (data, opts)
        return namespaced

    def items(self) -> Iterator[tuple[tuple[ArtifactKind, str], tuple[list[dict], dict[str, Any]]]]:
        return iter(list(self._writes.items()))

    @property
    def ids(self) -> list[str]:
        return [i for _, i in self._writes]

    @property
    def is_open(self) -> bool:
        return self._open

    def discard(self) -> None:
        self._open = False
        self._writes.clear()


@dataclass
class InstanceRecord:
    instance_id: str
    spec: Optional[RunSpec] = None
    context: Any = None                      # ExecutionContext of record
    artifacts: set[str] = field(default_factory=set)


class InstanceRegistry:
    """Single authoritative map of indicator instances, shared by reference."""

    def __init__(self):
        self._records: dict[str, InstanceRecord] = {}

    def ensure(self, instance_id: str) -> InstanceRecord:
        if instance_id not in self._records:
            self._records[instance_id] = InstanceRecord(instance_id=instance_id)
        return self._records[instance_id]

    def get(self, instance_id: str) -> Optional[InstanceRecord]:
        return self._records.get(instance_id)

    def context_of(self, instance_id: str):
        record = self._records.get(instance_id)
        return record.context if record else None

    def remove(self, instance_id: str) -> Optional[InstanceRecord]:
        return self._records.pop(instance_id, None)

    def ids(self) -> list[str]:
        return list(self._records)

    def __contains__(self, instance_id: str) -> bool:
        return instance_id in self._records

    def __len__(self) -> int:
        return len(self._records)


class ArtifactNamespaceManager:
    def __init__(self, registry: InstanceRegistry, sink: PlotSink):
        self._registry = registry
        self._sink = sink

    def open_stage(self, instance_id: str) -> ArtifactStage:
        return ArtifactStage(instance_id)

    def clear(self, instance_id: str) -> int:
        """Remove every artifact under the instance prefix, across all kinds."""
        prefix = namespace_prefix(instance_id)
        removed = sum(self._sink.clear_prefix(kind, prefix) or 0 for kind in ArtifactKind)
        record = self._registry.get(instance_id)
        if record is not None:
            record.artifacts.clear()
        return removed

    def commit(self, stage: ArtifactStage, owner: Any) -> list[str]:
        """
        Replace the instance's artifacts with the staged writes.
        Only the context of record may commit; anything else is discarded.
        """
        record = self._registry.get(stage.instance_id)
        if record is None or record.context is not owner or not stage.is_open:
            log.info("discarding %d staged writes from stale context of %s",
                     len(stage.ids), stage.instance_id)
            stage.discard()
            return []

        self.clear(stage.instance_id)
        committed = []
        for (kind, artifact_id), (data, opts) in stage.items():
            getattr(self._sink, kind.value)(artifact_id, data, opts)
            committed.append(artifact_id)
        record.artifacts = set(committed)
        stage.discard()
        return committed

    def forget(self, instance_id: str) -> int:
        """Clear the namespace for good (instance deselected or removed)."""
        return self.clear(instance_id)
