"""Task type registry: payload schemas and per-type execution limits."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from jsonschema import validators as jsonschema_validators
from jsonschema.exceptions import SchemaError

from agent_dispatch.dispatch.models import partition_key_for
from agent_dispatch.errors import RegistryError, UnknownTaskType

logger = logging.getLogger(__name__)

DEFAULT_TASK_TIMEOUT_MS = 600_000
_TASK_TYPE_FIELDS = frozenset(
    {"payload_schema", "default_timeout_ms", "max_deliveries", "command"},
)


@dataclass(frozen=True, slots=True)
class TaskTypeSpec:
    """Registered task type."""

    task_type: str
    payload_schema: Mapping[str, Any] = field(default_factory=dict)
    default_timeout_ms: int = DEFAULT_TASK_TIMEOUT_MS
    max_deliveries: int | None = None
    command: tuple[str, ...] | None = None

    @property
    def partition_key(self) -> str:
        return partition_key_for(self.task_type)

    def payload_violations(self, payload: Any) -> list[str]:
        """Every schema violation of ``payload``, in document order."""

        validator_cls = jsonschema_validators.validator_for(self.payload_schema)
        validator = validator_cls(self.payload_schema)
        violations: list[str] = []
        for error in sorted(validator.iter_errors(payload), key=lambda item: item.json_path):
            location = "/".join(str(part) for part in error.absolute_path) or "$"
            violations.append(f"{location}: {error.message}")
        return violations


class TaskTypeRegistry:
    """Read-only lookup of task types, built once at startup."""

    def __init__(self, specs: Iterable[TaskTypeSpec]) -> None:
        by_type: dict[str, TaskTypeSpec] = {}
        for spec in specs:
            _check_spec(spec)
            if spec.task_type in by_type:
                raise RegistryError(f"Duplicate task type in registry: {spec.task_type}")
            by_type[spec.task_type] = spec
        self._by_type = by_type

    def resolve(self, task_type: str) -> TaskTypeSpec:
        spec = self._by_type.get(task_type)
        if spec is None:
            raise UnknownTaskType(task_type)
        return spec

    def task_types(self) -> list[str]:
        return sorted(self._by_type)

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._by_type

    def __len__(self) -> int:
        return len(self._by_type)


def load_registry(path: Path) -> TaskTypeRegistry:
    """Load a registry from YAML with a top-level ``task_types`` mapping."""

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as error:
        raise RegistryError(f"Cannot read task type registry {path}: {error}") from error
    except yaml.YAMLError as error:
        raise RegistryError(f"Task type registry {path} is not valid YAML: {error}") from error

    registry = registry_from_mapping(raw, source=str(path))
    logger.info("Loaded %d task type(s) from %s", len(registry), path)
    return registry


def registry_from_mapping(raw: Any, *, source: str = "<mapping>") -> TaskTypeRegistry:
    if not isinstance(raw, Mapping) or not isinstance(raw.get("task_types"), Mapping):
        raise RegistryError(f"{source}: expected a mapping with a 'task_types' mapping")

    specs: list[TaskTypeSpec] = []
    for task_type, definition in raw["task_types"].items():
        if definition is None:
            definition = {}
        if not isinstance(definition, Mapping):
            raise RegistryError(f"{source}: task type {task_type!r} must be a mapping")
        unknown = sorted(set(definition) - _TASK_TYPE_FIELDS)
        if unknown:
            raise RegistryError(
                f"{source}: task type {task_type!r} has unknown field(s): {', '.join(unknown)}",
            )
        command = definition.get("command")
        if isinstance(command, str):
            command = command.split()
        specs.append(
            TaskTypeSpec(
                task_type=str(task_type),
                payload_schema=definition.get("payload_schema") or {},
                default_timeout_ms=int(
                    definition.get("default_timeout_ms", DEFAULT_TASK_TIMEOUT_MS),
                ),
                max_deliveries=(
                    int(definition["max_deliveries"])
                    if definition.get("max_deliveries") is not None
                    else None
                ),
                command=tuple(str(part) for part in command) if command else None,
            ),
        )
    return TaskTypeRegistry(specs)


def _check_spec(spec: TaskTypeSpec) -> None:
    if not spec.task_type or ":" in spec.task_type or spec.task_type != spec.task_type.strip():
        raise RegistryError(f"Invalid task type name: {spec.task_type!r}")
    if spec.default_timeout_ms <= 0:
        raise RegistryError(f"{spec.task_type}: default_timeout_ms must be > 0")
    if spec.max_deliveries is not None and spec.max_deliveries <= 0:
        raise RegistryError(f"{spec.task_type}: max_deliveries must be > 0")
    if not isinstance(spec.payload_schema, Mapping):
        raise RegistryError(f"{spec.task_type}: payload_schema must be a mapping")
    try:
        validator_cls = jsonschema_validators.validator_for(spec.payload_schema)
        validator_cls.check_schema(spec.payload_schema)
    except SchemaError as error:
        raise RegistryError(
            f"{spec.task_type}: invalid payload JSON Schema ({error.message})",
        ) from error
