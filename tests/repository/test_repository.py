"""
Repository and typelib document tests.

JSON documents loaded from disk, namespace versions and dependencies,
symbol resolution and the metadata lookups the engine relies on.
"""

import ctypes.util
import json

import pytest

from girbridge import (
    CallbackInfo,
    Direction,
    Engine,
    EngineConfig,
    EnumInfo,
    LoadError,
    MetadataError,
    ObjectInfo,
    PrimitiveTag,
    Repository,
    StructInfo,
    Transfer,
    TypeKind,
    UnknownMemberError,
)
from girbridge.typelib import dump_document, load_document, parse_document


def demo_document(version="1.0", **overrides):
    document = {
        "namespace": "Demo",
        "version": version,
        "dependencies": ["Fake-1.0"],
        "functions": [
            {
                "name": "total",
                "symbol": "fake_sum",
                "parameters": [
                    {"name": "values", "type": {"kind": "array", "element": "int32"}},
                    {"name": "n_values", "type": "int32"},
                ],
                "returns": "int64",
            },
            {
                "name": "tokens",
                "symbol": "fake_split",
                "parameters": [
                    {"name": "text", "type": "utf8"},
                    {"name": "separator", "type": "utf8"},
                ],
                "returns": {
                    "kind": "array",
                    "element": "utf8",
                    "zero_terminated": True,
                    "transfer": "full",
                },
            },
        ],
        "enums": [{"name": "Color", "values": {"red": 0, "green": 1}}],
        "structs": [
            {
                "name": "Pair",
                "size": 8,
                "fields": [
                    {"name": "first", "type": "int32", "offset": 0},
                    {"name": "second", "type": "int32", "offset": 4, "writable": False},
                ],
            }
        ],
        "objects": [
            {
                "name": "Thing",
                "methods": [
                    {"name": "get_size", "is_method": True, "returns": "int32"},
                    {
                        "name": "new",
                        "returns": {"kind": "object", "interface": "Thing", "transfer": "full"},
                    },
                ],
                "properties": [{"name": "size", "type": "int32", "writable": False}],
                "signals": [{"name": "changed", "parameters": [{"name": "what", "type": "utf8"}]}],
            }
        ],
        "callbacks": [
            {
                "name": "Visitor",
                "parameters": [
                    {"name": "item", "type": "int32"},
                    {"name": "data", "type": "gpointer", "closure_of": "Visitor"},
                ],
            }
        ],
    }
    document.update(overrides)
    return document


def write_document(directory, document):
    path = directory / f"{document['namespace']}-{document['version']}.json"
    path.write_text(json.dumps(document), encoding="utf-8")
    return path


@pytest.fixture
def typelib_dir(tmp_path):
    write_document(tmp_path, demo_document("1.0"))
    return tmp_path


class TestDocuments:
    """Parsing and validating typelib documents."""

    def test_functions(self):
        document = parse_document(demo_document())
        total, tokens = document.signatures()

        assert total.qualified_name == "Demo.total"
        assert total.symbol == "fake_sum"
        assert total.parameters[0].type.kind is TypeKind.ARRAY
        assert total.return_type.tag is PrimitiveTag.INT64
        assert tokens.return_type.transfer is Transfer.FULL
        assert tokens.return_type.zero_terminated

    def test_interfaces(self):
        infos = {info.name: info for info in parse_document(demo_document()).interfaces()}

        assert isinstance(infos["Color"], EnumInfo)
        assert isinstance(infos["Pair"], StructInfo)
        assert isinstance(infos["Thing"], ObjectInfo)
        assert isinstance(infos["Visitor"], CallbackInfo)

    def test_interface_names_qualified(self):
        infos = {info.name: info for info in parse_document(demo_document()).interfaces()}
        constructor = infos["Thing"].find_method("new")

        assert constructor.return_type.interface == "Demo.Thing"
        assert constructor.container == "Thing"
        assert infos["Thing"].find_method("get_size").is_method

    def test_struct_fields(self):
        infos = {info.name: info for info in parse_document(demo_document()).interfaces()}
        second = infos["Pair"].find_field("second")

        assert second.offset == 4
        assert not second.writable

    def test_callback_user_data(self):
        infos = {info.name: info for info in parse_document(demo_document()).interfaces()}
        visitor = infos["Visitor"].signature

        assert visitor.parameters[1].closure_of == "Visitor"
        assert visitor.parameters[1].direction is Direction.IN

    def test_shorthand_types(self):
        document = parse_document(
            {
                "namespace": "Short",
                "version": "1",
                "functions": [
                    {
                        "name": "f",
                        "parameters": [
                            {"name": "a", "type": "filename"},
                            {"name": "b", "type": "gpointer"},
                            {"name": "c", "type": "double"},
                        ],
                    }
                ],
            }
        )
        a, b, c = document.signatures()[0].parameters

        assert a.type.is_filename
        assert b.type.is_pointer and b.type.is_nullable
        assert c.type.tag is PrimitiveTag.DOUBLE

    def test_invalid_json(self):
        with pytest.raises(MetadataError):
            parse_document("{not json")

    @pytest.mark.parametrize(
        "overrides",
        [
            {"namespace": "not a namespace"},
            {"format": 2},
            {"unexpected": True},
            {"functions": [{"name": "f", "returns": "int33"}]},
            {"structs": [{"name": "S", "size": -1}]},
            {"functions": [{"name": "f", "returns": {"kind": "array"}}]},
            {"enums": [{"name": "E", "values": {"a": 1}, "storage": "double"}]},
        ],
    )
    def test_invalid_document(self, overrides):
        with pytest.raises(MetadataError) as exc_info:
            parse_document(demo_document(**overrides), "demo.json")
        assert exc_info.value.details["source"] == "demo.json"

    def test_missing_file(self, tmp_path):
        with pytest.raises(MetadataError):
            load_document(tmp_path / "Missing-1.0.json")

    def test_dump_is_loadable(self):
        document = parse_document(demo_document())
        assert parse_document(dump_document(document)) == document


class TestRegistration:
    """Filling a repository."""

    def test_load_typelib(self, repository, typelib_dir):
        namespace = repository.load_typelib(typelib_dir / "Demo-1.0.json")

        assert namespace == "Demo"
        assert repository.version_of("Demo") == "1.0"
        assert "Demo" in repository.namespaces

    def test_describe_callable(self, repository, typelib_dir):
        repository.load_typelib(typelib_dir / "Demo-1.0.json")

        assert repository.describe_callable("Demo", "total").symbol == "fake_sum"
        assert repository.describe_callable("Demo", "Thing.get_size").is_method

    def test_describe_type(self, repository, typelib_dir):
        repository.load_typelib(typelib_dir / "Demo-1.0.json")

        assert repository.describe_type("Demo", "Color").kind is TypeKind.ENUM
        assert repository.describe_type("Demo", "Pair").kind is TypeKind.STRUCT
        assert repository.describe_type("Demo", "Thing").kind is TypeKind.OBJECT
        assert repository.describe_type("Demo", "Visitor").kind is TypeKind.CALLBACK

    def test_unknown_members(self, repository):
        with pytest.raises(UnknownMemberError):
            repository.describe_callable("Fake", "nothing")
        with pytest.raises(UnknownMemberError):
            repository.describe_interface("Fake", "Nothing")
        with pytest.raises(UnknownMemberError):
            repository.describe_callable("Fake", "Point.nothing")
        with pytest.raises(UnknownMemberError):
            repository.describe_callable("Fake", "Orientation.flip")

    def test_unloaded_namespace(self, repository):
        with pytest.raises(LoadError):
            repository.describe_callable("Nowhere", "f")

    def test_add_callable_needs_namespace(self, repository):
        from girbridge import CallableSignature

        with pytest.raises(ValueError):
            repository.add_callable(CallableSignature.build("orphan"))


class TestRequire:
    """Loading namespaces from the typelib search path."""

    def test_require_loads_document(self, fake, typelib_dir):
        repository = fake.install(Repository(typelib_path=[typelib_dir]))
        repository.require("Demo", "1.0")

        assert repository.version_of("Demo") == "1.0"

    def test_highest_version_by_default(self, fake, typelib_dir):
        write_document(typelib_dir, demo_document("1.10"))
        write_document(typelib_dir, demo_document("1.9"))
        repository = fake.install(Repository(typelib_path=[typelib_dir]))

        repository.require("Demo")

        assert repository.version_of("Demo") == "1.10"

    def test_loaded_on_first_use(self, fake, typelib_dir):
        repository = fake.install(Repository(typelib_path=[typelib_dir]))
        assert repository.describe_callable("Demo", "total").name == "total"

    def test_require_is_idempotent(self, fake, typelib_dir):
        repository = fake.install(Repository(typelib_path=[typelib_dir]))
        repository.require("Demo", "1.0")
        repository.require("Demo", "1.0")
        repository.require("Demo")

    def test_version_conflict(self, fake, typelib_dir):
        write_document(typelib_dir, demo_document("2.0"))
        repository = fake.install(Repository(typelib_path=[typelib_dir]))
        repository.require("Demo", "1.0")

        with pytest.raises(LoadError) as exc_info:
            repository.require("Demo", "2.0")
        assert exc_info.value.details == {"namespace": "Demo", "version": "2.0"}

    def test_dependencies_required_first(self, tmp_path):
        write_document(tmp_path, {"namespace": "Base", "version": "3.0"})
        write_document(
            tmp_path, {"namespace": "Top", "version": "1.0", "dependencies": ["Base-3.0"]}
        )
        repository = Repository(typelib_path=[tmp_path])

        repository.require("Top")

        assert repository.namespaces == ["Base", "Top"]
        assert repository.version_of("Base") == "3.0"

    def test_missing_typelib(self, tmp_path):
        repository = Repository(typelib_path=[tmp_path])
        with pytest.raises(LoadError):
            repository.require("Missing", "1.0")


class TestSymbols:
    """Symbol resolution."""

    def test_registered_symbol(self, fake, repository):
        assert repository.resolve_symbol("Fake", "fake_sum") == fake.address_of("Fake", "fake_sum")
        assert repository.resolve("Fake.fake_sum") == fake.address_of("Fake", "fake_sum")

    def test_missing_symbol(self, repository):
        with pytest.raises(UnknownMemberError) as exc_info:
            repository.resolve_symbol("Fake", "fake_missing")
        assert exc_info.value.details["symbol"] == "fake_missing"

    def test_resolved_through_dependency(self, fake, repository, typelib_dir):
        repository.load_typelib(typelib_dir / "Demo-1.0.json")
        assert repository.resolve_symbol("Demo", "fake_sum") == fake.address_of("Fake", "fake_sum")

    def test_missing_library(self, repository):
        repository.add_namespace("Broken", "1.0", libraries=["libgirbridge-missing.so.0"])
        with pytest.raises(LoadError):
            repository.resolve_symbol("Broken", "anything")


class TestEngineOverDocuments:
    """Engine calls described entirely by a typelib document."""

    def test_call_through_dependency(self, engine, repository, typelib_dir):
        repository.load_typelib(typelib_dir / "Demo-1.0.json")

        assert engine.invoke_by_name("Demo", "total", [[4, 5, 6]]) == 15
        assert engine.invoke_by_name("Demo", "tokens", ["a b", " "]) == ["a", "b"]

    @pytest.mark.skipif(ctypes.util.find_library("c") is None, reason="no C runtime found")
    def test_shared_library(self, tmp_path):
        """Symbols come from the namespace's shared library."""
        libc = ctypes.util.find_library("c")
        write_document(
            tmp_path,
            {
                "namespace": "LibC",
                "version": "1.0",
                "shared_libraries": [libc],
                "functions": [
                    {
                        "name": "abs",
                        "parameters": [{"name": "value", "type": "int32"}],
                        "returns": "int32",
                    },
                    {
                        "name": "strlen",
                        "parameters": [{"name": "text", "type": "utf8"}],
                        "returns": "uint64",
                    },
                ],
            },
        )
        engine = Engine(Repository(typelib_path=[tmp_path]), EngineConfig())
        try:
            assert engine.invoke_by_name("LibC", "abs", [-5]) == 5
            assert engine.invoke_by_name("LibC", "strlen", ["héllo"]) == 6
        finally:
            engine.close()

