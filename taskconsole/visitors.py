"""Extract structured data from the fields of tracing spans and events."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field as dc_field
from typing import Any, ClassVar

__all__ = [
    "LOCATION_FILE",
    "LOCATION_LINE",
    "LOCATION_COLUMN",
    "INHERIT_FIELD_NAME",
    "Location",
    "Field",
    "ResourceKind",
    "WakeOp",
    "UpdateOp",
    "Update",
    "ResourceVisitorResult",
    "ResourceVisitor",
    "FieldVisitor",
    "TaskVisitor",
    "AsyncOpVisitor",
    "WakerVisitor",
    "PollOpVisitor",
    "StateUpdateVisitor",
]

LOCATION_FILE = "loc.file"
LOCATION_LINE = "loc.line"
LOCATION_COLUMN = "loc.col"
INHERIT_FIELD_NAME = "inherits_child_attrs"

_U32_MASK = 0xFFFFFFFF


@dataclass(frozen=True)
class Location:
    """A source location where something was created."""

    file: str | None = None
    line: int | None = None
    column: int | None = None
    module_path: str | None = None


@dataclass(frozen=True)
class Field:
    """A named field value, tagged with the metadata it came from.

    ``debug`` is true when the value is a debug-formatted string.
    """

    name: str
    value: str | int | bool
    metadata_id: int
    debug: bool = False


@dataclass(frozen=True)
class ResourceKind:
    """The kind of a resource: a known kind such as ``timer`` or any other name."""

    name: str
    known: bool = False

    TIMER: ClassVar[ResourceKind]


ResourceKind.TIMER = ResourceKind("timer", known=True)


@dataclass(frozen=True)
class WakeOp:
    """An operation performed on a task's waker."""

    kind: str
    self_wake: bool = False

    WAKE: ClassVar[str] = "wake"
    WAKE_BY_REF: ClassVar[str] = "wake_by_ref"
    CLONE: ClassVar[str] = "clone"
    DROP: ClassVar[str] = "drop"

    def __post_init__(self) -> None:
        if self.kind not in (self.WAKE, self.WAKE_BY_REF, self.CLONE, self.DROP):
            raise ValueError(f"unknown waker operation: {self.kind!r}")

    @classmethod
    def wake(cls, self_wake: bool = False) -> WakeOp:
        return cls(cls.WAKE, self_wake)

    @classmethod
    def wake_by_ref(cls, self_wake: bool = False) -> WakeOp:
        return cls(cls.WAKE_BY_REF, self_wake)

    @classmethod
    def clone(cls) -> WakeOp:
        return cls(cls.CLONE)

    @classmethod
    def drop(cls) -> WakeOp:
        return cls(cls.DROP)


class UpdateOp(enum.Enum):
    """How a state update changes a resource attribute."""

    ADD = "add"
    SUB = "sub"
    OVERRIDE = "override"


@dataclass(frozen=True)
class Update:
    """An update to a resource attribute."""

    field: Field
    op: UpdateOp | None = None
    unit: str | None = None


@dataclass(frozen=True)
class ResourceVisitorResult:
    concrete_type: str
    kind: ResourceKind
    location: Location | None
    is_internal: bool
    inherit_child_attrs: bool


def _location(file: str | None, line: int | None, column: int | None) -> Location | None:
    if file is not None and line is not None and column is not None:
        return Location(file=file, line=line, column=column)
    return None


def _debug_text(value: Any) -> str:
    return value if isinstance(value, str) else repr(value)


class _Visit:
    """Default dispatch: typed values fall back to ``record_debug``."""

    def record_debug(self, name: str, value: Any) -> None:
        pass

    def record_i64(self, name: str, value: int) -> None:
        self.record_debug(name, value)

    def record_u64(self, name: str, value: int) -> None:
        self.record_debug(name, value)

    def record_bool(self, name: str, value: bool) -> None:
        self.record_debug(name, value)

    def record_str(self, name: str, value: str) -> None:
        self.record_debug(name, value)


class ResourceVisitor(_Visit):
    """Collects the fields of a ``runtime.resource`` span."""

    RES_SPAN_NAME = "runtime.resource"
    RES_CONCRETE_TYPE_FIELD_NAME = "concrete_type"
    RES_VIZ_FIELD_NAME = "is_internal"
    RES_KIND_FIELD_NAME = "kind"
    RES_KIND_TIMER = "timer"

    def __init__(self) -> None:
        self.concrete_type: str | None = None
        self.kind: ResourceKind | None = None
        self.is_internal = False
        self.inherit_child_attrs = False
        self.line: int | None = None
        self.file: str | None = None
        self.column: int | None = None

    def record_debug(self, name: str, value: Any) -> None:
        pass

    def record_str(self, name: str, value: str) -> None:
        if name == self.RES_CONCRETE_TYPE_FIELD_NAME:
            self.concrete_type = value
        elif name == self.RES_KIND_FIELD_NAME:
            if value == self.RES_KIND_TIMER:
                self.kind = ResourceKind.TIMER
            else:
                self.kind = ResourceKind(value)
        elif name == LOCATION_FILE:
            self.file = value

    def record_bool(self, name: str, value: bool) -> None:
        if name == self.RES_VIZ_FIELD_NAME:
            self.is_internal = value
        elif name == INHERIT_FIELD_NAME:
            self.inherit_child_attrs = value

    def record_u64(self, name: str, value: int) -> None:
        if name == LOCATION_LINE:
            self.line = value & _U32_MASK
        elif name == LOCATION_COLUMN:
            self.column = value & _U32_MASK

    def result(self) -> ResourceVisitorResult | None:
        """Return the resource description, or None if type or kind is missing."""
        if self.concrete_type is None or self.kind is None:
            return None
        return ResourceVisitorResult(
            concrete_type=self.concrete_type,
            kind=self.kind,
            location=_location(self.file, self.line, self.column),
            is_internal=self.is_internal,
            inherit_child_attrs=self.inherit_child_attrs,
        )


class FieldVisitor(_Visit):
    """Records every field it sees."""

    def __init__(self, meta_id: int) -> None:
        self.meta_id = meta_id
        self.fields: list[Field] = []

    def _push(self, name: str, value: str | int | bool, debug: bool = False) -> None:
        self.fields.append(Field(name, value, self.meta_id, debug))

    def record_debug(self, name: str, value: Any) -> None:
        self._push(name, _debug_text(value), debug=True)

    def record_i64(self, name: str, value: int) -> None:
        self._push(name, value)

    def record_u64(self, name: str, value: int) -> None:
        self._push(name, value)

    def record_bool(self, name: str, value: bool) -> None:
        self._push(name, value)

    def record_str(self, name: str, value: str) -> None:
        self._push(name, value)

    def result(self) -> list[Field]:
        return list(self.fields)


class TaskVisitor(_Visit):
    """Collects a spawned task's fields and its spawn location."""

    def __init__(self, meta_id: int) -> None:
        self.field_visitor = FieldVisitor(meta_id)
        self.line: int | None = None
        self.file: str | None = None
        self.column: int | None = None

    def record_debug(self, name: str, value: Any) -> None:
        self.field_visitor.record_debug(name, value)

    def record_i64(self, name: str, value: int) -> None:
        self.field_visitor.record_i64(name, value)

    def record_u64(self, name: str, value: int) -> None:
        if name == LOCATION_LINE:
            self.line = value & _U32_MASK
        elif name == LOCATION_COLUMN:
            self.column = value & _U32_MASK
        else:
            self.field_visitor.record_u64(name, value)

    def record_bool(self, name: str, value: bool) -> None:
        self.field_visitor.record_bool(name, value)

    def record_str(self, name: str, value: str) -> None:
        if name == LOCATION_FILE:
            self.file = value
        else:
            self.field_visitor.record_str(name, value)

    def result(self) -> tuple[list[Field], Location | None]:
        return self.field_visitor.result(), _location(self.file, self.line, self.column)


class AsyncOpVisitor(_Visit):
    """Collects the fields of a ``runtime.resource.async_op`` span."""

    ASYNC_OP_SPAN_NAME = "runtime.resource.async_op"
    ASYNC_OP_SRC_FIELD_NAME = "source"

    def __init__(self) -> None:
        self.source: str | None = None
        self.inherit_child_attrs = False

    def record_debug(self, name: str, value: Any) -> None:
        pass

    def record_str(self, name: str, value: str) -> None:
        if name == self.ASYNC_OP_SRC_FIELD_NAME:
            self.source = value

    def record_bool(self, name: str, value: bool) -> None:
        if name == INHERIT_FIELD_NAME:
            self.inherit_child_attrs = value

    def result(self) -> tuple[str, bool] | None:
        if self.source is None:
            return None
        return self.source, self.inherit_child_attrs


class WakerVisitor(_Visit):
    """Collects the task id and operation of a waker event."""

    WAKE = "waker.wake"
    WAKE_BY_REF = "waker.wake_by_ref"
    CLONE = "waker.clone"
    DROP = "waker.drop"
    TASK_ID_FIELD_NAME = "task.id"

    _OPS: ClassVar[dict[str, WakeOp]] = {
        WAKE: WakeOp.wake(),
        WAKE_BY_REF: WakeOp.wake_by_ref(),
        CLONE: WakeOp.clone(),
        DROP: WakeOp.drop(),
    }

    def __init__(self) -> None:
        self.id: int | None = None
        self.op: WakeOp | None = None

    def record_debug(self, name: str, value: Any) -> None:
        pass

    def record_u64(self, name: str, value: int) -> None:
        if name == self.TASK_ID_FIELD_NAME:
            self.id = value

    def record_str(self, name: str, value: str) -> None:
        if name == "op":
            op = self._OPS.get(value)
            if op is not None:
                self.op = op

    def result(self) -> tuple[int, WakeOp] | None:
        if self.id is None or self.op is None:
            return None
        return self.id, self.op


class PollOpVisitor(_Visit):
    """Collects the name and readiness of a resource poll operation."""

    POLL_OP_EVENT_TARGET = "runtime::resource::poll_op"
    OP_NAME_FIELD_NAME = "op_name"
    OP_READINESS_FIELD_NAME = "is_ready"

    def __init__(self) -> None:
        self.op_name: str | None = None
        self.is_ready: bool | None = None

    def record_debug(self, name: str, value: Any) -> None:
        pass

    def record_bool(self, name: str, value: bool) -> None:
        if name == self.OP_READINESS_FIELD_NAME:
            self.is_ready = value

    def record_str(self, name: str, value: str) -> None:
        if name == self.OP_NAME_FIELD_NAME:
            self.op_name = value

    def result(self) -> tuple[str, bool] | None:
        if self.op_name is None or self.is_ready is None:
            return None
        return self.op_name, self.is_ready


class StateUpdateVisitor(_Visit):
    """Collects a resource attribute update, its unit and its operation."""

    RE_STATE_UPDATE_EVENT_TARGET = "runtime::resource::state_update"
    AO_STATE_UPDATE_EVENT_TARGET = "runtime::resource::async_op::state_update"

    STATE_OP_SUFFIX = ".op"
    STATE_UNIT_SUFFIX = ".unit"

    _OPS: ClassVar[dict[str, UpdateOp]] = {op.value: op for op in UpdateOp}

    def __init__(self, meta_id: int) -> None:
        self.meta_id = meta_id
        self.field: Field | None = None
        self.unit: str | None = None
        self.op: UpdateOp | None = None

    def _is_value_field(self, name: str) -> bool:
        return not (
            name.endswith(self.STATE_OP_SUFFIX) or name.endswith(self.STATE_UNIT_SUFFIX)
        )

    def _set(self, name: str, value: str | int | bool, debug: bool = False) -> None:
        if self._is_value_field(name):
            self.field = Field(name, value, self.meta_id, debug)

    def record_debug(self, name: str, value: Any) -> None:
        self._set(name, _debug_text(value), debug=True)

    def record_i64(self, name: str, value: int) -> None:
        self._set(name, value)

    def record_u64(self, name: str, value: int) -> None:
        self._set(name, value)

    def record_bool(self, name: str, value: bool) -> None:
        self._set(name, value)

    def record_str(self, name: str, value: str) -> None:
        if name.endswith(self.STATE_OP_SUFFIX):
            op = self._OPS.get(value)
            if op is not None:
                self.op = op
        elif name.endswith(self.STATE_UNIT_SUFFIX):
            self.unit = value
        else:
            self.field = Field(name, value, self.meta_id)

    def result(self) -> Update | None:
        if self.field is None:
            return None
        return Update(field=self.field, op=self.op, unit=self.unit)