"""
JSON typelib documents.

A typelib document describes one namespace version: its shared libraries,
functions, enums, structs, objects and callback types. Documents are
validated with pydantic and converted into the frozen metadata classes of
``girbridge.types``.

Types can be written in full::

    {"kind": "array", "element": "utf8", "zero_terminated": true, "transfer": "full"}

or with a shorthand string: a primitive tag (``"int32"``), ``"utf8"``,
``"filename"``, ``"void"``, ``"gpointer"``.

Example document (``Demo-1.0.json``)::

    {
      "namespace": "Demo",
      "version": "1.0",
      "shared_libraries": ["libdemo.so.1"],
      "dependencies": ["GObject-2.0"],
      "functions": [
        {"name": "add", "symbol": "demo_add",
         "parameters": [{"name": "a", "type": "int32"}, {"name": "b", "type": "int32"}],
         "returns": "int32"}
      ]
    }
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .exceptions import MetadataError
from .types import (
    CallableSignature,
    CallbackInfo,
    Direction,
    EnumInfo,
    FieldInfo,
    InterfaceInfo,
    ObjectInfo,
    ParameterSpec,
    PrimitiveTag,
    PropertyInfo,
    Scope,
    SignalInfo,
    StructInfo,
    Transfer,
    TypeDescriptor,
    TypeKind,
    qualify,
)

_SHORTHAND: dict[str, dict[str, Any]] = {
    "utf8": {"kind": "string"},
    "filename": {"kind": "string", "filename": True},
    "void": {"kind": "void"},
    "gpointer": {"kind": "void", "pointer": True, "nullable": True},
}


class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class TypeModel(_Model):
    """One type reference."""

    kind: TypeKind
    tag: PrimitiveTag | None = None
    element: TypeModel | None = None
    interface: str | None = None
    transfer: Transfer = Transfer.NONE
    nullable: bool = False
    pointer: bool = False
    zero_terminated: bool = False
    fixed_size: int | None = Field(default=None, ge=0)
    filename: bool = False

    @model_validator(mode="before")
    @classmethod
    def _expand_shorthand(cls, data: Any) -> Any:
        if not isinstance(data, str):
            return data
        if data in _SHORTHAND:
            return dict(_SHORTHAND[data])
        try:
            return {"kind": "primitive", "tag": PrimitiveTag(data).value}
        except ValueError:
            raise ValueError(f"unknown type shorthand {data!r}") from None

    def to_descriptor(self, namespace: str) -> TypeDescriptor:
        return TypeDescriptor(
            self.kind,
            tag=self.tag,
            element_type=self.element.to_descriptor(namespace) if self.element else None,
            interface=qualify(namespace, self.interface) if self.interface else None,
            transfer=self.transfer,
            is_nullable=self.nullable,
            is_pointer=self.pointer or self.kind is TypeKind.STRUCT,
            zero_terminated=self.zero_terminated,
            fixed_size=self.fixed_size,
            is_filename=self.filename,
        )


TypeModel.model_rebuild()


class ParameterModel(_Model):
    name: str
    type: TypeModel
    direction: Direction = Direction.IN
    length_of: str | None = None
    caller_allocates: bool = False
    closure_of: str | None = None
    destroy_of: str | None = None
    scope: Scope = Scope.CALL

    def to_spec(self, namespace: str) -> ParameterSpec:
        return ParameterSpec(
            self.name,
            self.type.to_descriptor(namespace),
            direction=self.direction,
            length_of=self.length_of,
            caller_allocates=self.caller_allocates,
            closure_of=self.closure_of,
            destroy_of=self.destroy_of,
            scope=self.scope,
        )


class CallableModel(_Model):
    name: str
    symbol: str | None = None
    parameters: list[ParameterModel] = Field(default_factory=list)
    returns: TypeModel = TypeModel(kind=TypeKind.VOID)
    is_method: bool = False
    throws: bool = False

    def to_signature(self, namespace: str, container: str | None = None) -> CallableSignature:
        return CallableSignature.build(
            self.name,
            [p.to_spec(namespace) for p in self.parameters],
            returns=self.returns.to_descriptor(namespace),
            symbol=self.symbol,
            namespace=namespace,
            container=container,
            is_method=self.is_method,
            throws=self.throws,
        )


class EnumModel(_Model):
    name: str
    values: dict[str, int]
    flags: bool = False
    storage: PrimitiveTag = PrimitiveTag.INT32


class FieldModel(_Model):
    name: str
    type: TypeModel
    offset: int = Field(ge=0)
    readable: bool = True
    writable: bool = True


class StructModel(_Model):
    name: str
    size: int = Field(ge=0)
    fields: list[FieldModel] = Field(default_factory=list)
    methods: list[CallableModel] = Field(default_factory=list)
    copy_function: str | None = None
    free_function: str | None = None


class PropertyModel(_Model):
    name: str
    type: TypeModel
    readable: bool = True
    writable: bool = True
    getter: str | None = None
    setter: str | None = None


class SignalModel(_Model):
    name: str
    parameters: list[ParameterModel] = Field(default_factory=list)
    returns: TypeModel = TypeModel(kind=TypeKind.VOID)


class ObjectModel(_Model):
    name: str
    parent: str | None = None
    methods: list[CallableModel] = Field(default_factory=list)
    properties: list[PropertyModel] = Field(default_factory=list)
    signals: list[SignalModel] = Field(default_factory=list)
    ref_function: str | None = None
    unref_function: str | None = None


class CallbackModel(_Model):
    name: str
    parameters: list[ParameterModel] = Field(default_factory=list)
    returns: TypeModel = TypeModel(kind=TypeKind.VOID)


class TypelibDocument(_Model):
    """A whole namespace version."""

    format: Literal[1] = 1
    namespace: str = Field(min_length=1, pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    version: str = Field(min_length=1)
    shared_libraries: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    functions: list[CallableModel] = Field(default_factory=list)
    enums: list[EnumModel] = Field(default_factory=list)
    structs: list[StructModel] = Field(default_factory=list)
    objects: list[ObjectModel] = Field(default_factory=list)
    callbacks: list[CallbackModel] = Field(default_factory=list)

    def signatures(self) -> list[CallableSignature]:
        """Top-level functions."""
        return [f.to_signature(self.namespace) for f in self.functions]

    def interfaces(self) -> list[InterfaceInfo]:
        ns = self.namespace
        infos: list[InterfaceInfo] = []
        for e in self.enums:
            infos.append(EnumInfo(e.name, ns, tuple(e.values.items()), e.flags, e.storage))
        for s in self.structs:
            infos.append(
                StructInfo(
                    s.name,
                    ns,
                    s.size,
                    fields=tuple(
                        FieldInfo(
                            f.name, f.type.to_descriptor(ns), f.offset, f.readable, f.writable
                        )
                        for f in s.fields
                    ),
                    methods=tuple(m.to_signature(ns, s.name) for m in s.methods),
                    copy_function=s.copy_function,
                    free_function=s.free_function,
                )
            )
        for o in self.objects:
            infos.append(
                ObjectInfo(
                    o.name,
                    ns,
                    parent=o.parent,
                    methods=tuple(m.to_signature(ns, o.name) for m in o.methods),
                    properties=tuple(
                        PropertyInfo(
                            p.name,
                            p.type.to_descriptor(ns),
                            p.readable,
                            p.writable,
                            p.getter,
                            p.setter,
                        )
                        for p in o.properties
                    ),
                    signals=tuple(
                        SignalInfo(
                            s.name,
                            tuple(p.to_spec(ns) for p in s.parameters),
                            s.returns.to_descriptor(ns),
                        )
                        for s in o.signals
                    ),
                    ref_function=o.ref_function,
                    unref_function=o.unref_function,
                )
            )
        for c in self.callbacks:
            signature = CallableSignature.build(
                c.name,
                [p.to_spec(ns) for p in c.parameters],
                returns=c.returns.to_descriptor(ns),
                namespace=ns,
            )
            infos.append(CallbackInfo(c.name, ns, signature))
        return infos


def parse_document(data: str | bytes | dict[str, Any], source: str = "<memory>") -> TypelibDocument:
    """
    Validate a typelib document.

    Raises
    ------
    MetadataError
        If the JSON is malformed, fails validation, or describes
        inconsistent metadata.
    """
    try:
        if isinstance(data, (str, bytes)):
            document = TypelibDocument.model_validate_json(data)
        else:
            document = TypelibDocument.model_validate(data)
    except ValidationError as e:
        raise MetadataError(
            f"Invalid typelib document {source}: {e.error_count()} error(s)\n{e}",
            details={"source": source, "errors": e.errors(include_url=False)},
        ) from e
    try:
        document.signatures()
        document.interfaces()
    except MetadataError as e:
        raise MetadataError(
            f"Inconsistent typelib document {source}: {e.message}",
            details={**e.details, "source": source},
        ) from e
    return document


def load_document(path: str | Path) -> TypelibDocument:
    """Read and validate a typelib document from ``path``."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise MetadataError(
            f"Cannot read typelib document {path}: {e}", details={"source": str(path)}
        ) from e
    return parse_document(text, str(path))


def dump_document(document: TypelibDocument) -> str:
    return json.dumps(document.model_dump(mode="json", exclude_defaults=True), indent=2)
