"""Property store, type cache and value coercion."""

from __future__ import annotations

import math
from decimal import Decimal
from typing import Any

import pytest

from tabcalc.store import DictPropertyStore, PropertyPathInvalid, TargetTypeInvalid, TypeCache
from tabcalc.values import (
    DataFieldType,
    ValueKind,
    coerce_to_kind,
    for_provider,
    format_value,
    is_assignable,
    kind_from_name,
    kind_of,
    parse_data_value,
    to_bool,
)


@pytest.fixture
def store() -> DictPropertyStore:
    return DictPropertyStore(
        {
            "Enemy": {
                "health": "float",
                "level": "System.Int32",
                "stats.armor": "byte",
                "name": "string",
            }
        }
    )


# ────────────────────────────────────────────────────────────────
# DictPropertyStore
# ────────────────────────────────────────────────────────────────


class TestDictPropertyStore:
    def test_get_nested(self, store: DictPropertyStore) -> None:
        obj = {"health": 10.0, "stats": {"armor": 3}}
        assert store.get(obj, "Enemy", "health") == 10.0
        assert store.get(obj, "Enemy", "stats.armor") == 3

    def test_get_missing_value_is_none(self, store: DictPropertyStore) -> None:
        assert store.get({}, "Enemy", "health") is None

    def test_get_unknown_type(self, store: DictPropertyStore) -> None:
        with pytest.raises(TargetTypeInvalid) as exc_info:
            store.get({}, "Dragon", "health")
        assert exc_info.value.type_name == "Dragon"

    def test_get_unknown_path(self, store: DictPropertyStore) -> None:
        with pytest.raises(PropertyPathInvalid) as exc_info:
            store.get({}, "Enemy", "mana")
        assert exc_info.value.path == "mana"

    def test_set_coerces(self, store: DictPropertyStore) -> None:
        obj: dict[str, Any] = {}
        assert store.set(obj, "Enemy", "health", 7)
        assert obj["health"] == 7.0 and isinstance(obj["health"], float)
        assert store.set(obj, "Enemy", "level", 2.0)
        assert obj["level"] == 2 and isinstance(obj["level"], int)

    def test_set_creates_nested(self, store: DictPropertyStore) -> None:
        obj: dict[str, Any] = {}
        assert store.set(obj, "Enemy", "stats.armor", 4)
        assert obj == {"stats": {"armor": 4}}

    def test_rejected_write_leaves_value(self, store: DictPropertyStore) -> None:
        obj = {"stats": {"armor": 9}}
        assert not store.set(obj, "Enemy", "stats.armor", 300)
        assert not store.set(obj, "Enemy", "mana", 1)
        assert not store.set(obj, "Dragon", "health", 1)
        assert not store.set(obj, "Enemy", "health", "lots")
        assert obj == {"stats": {"armor": 9}}

    def test_property_kind(self, store: DictPropertyStore) -> None:
        assert store.property_kind("Enemy", "level") == ValueKind.integer
        assert store.property_kind("Enemy", "stats.armor") == ValueKind.uint8
        assert store.property_kind("Enemy", "mana") is None
        assert store.property_kind("Dragon", "health") is None

    def test_declare_unknown_kind(self) -> None:
        with pytest.raises(ValueError):
            DictPropertyStore({"Thing": {"x": "quaternion"}})


class TestTypeCache:
    def test_memoizes_hits_and_misses(self) -> None:
        calls: list[str] = []

        class Resolver:
            def resolve(self, type_name: str) -> Any:
                calls.append(type_name)
                return object() if type_name == "Enemy" else None

        cache = TypeCache(Resolver())
        first = cache.resolve("Enemy")
        assert cache.resolve("Enemy") is first
        assert cache.resolve("Dragon") is None
        assert cache.resolve("Dragon") is None
        assert calls == ["Enemy", "Dragon"]
        assert len(cache) == 2

    def test_clear(self, store: DictPropertyStore) -> None:
        cache = TypeCache(store)
        assert cache.resolve("Boss") is None
        store.declare("Boss", {"phase": "int"})
        assert cache.resolve("Boss") is None
        cache.clear()
        assert cache.resolve("Boss") == {"phase": ValueKind.integer}


# ────────────────────────────────────────────────────────────────
# Value kinds
# ────────────────────────────────────────────────────────────────


class TestValueKinds:
    @pytest.mark.parametrize(
        "value, kind",
        [
            (True, ValueKind.boolean),
            (3, ValueKind.integer),
            (3.0, ValueKind.float),
            (Decimal("1"), ValueKind.decimal),
            ("x", ValueKind.string),
            ((1.0, 2.0), ValueKind.vector),
            (object(), ValueKind.object_ref),
            (None, None),
        ],
    )
    def test_kind_of(self, value: Any, kind: ValueKind | None) -> None:
        assert kind_of(value) == kind

    def test_kind_from_name(self) -> None:
        assert kind_from_name("System.Single") == ValueKind.float
        assert kind_from_name("ulong") == ValueKind.uint64
        assert kind_from_name("Vector3") == ValueKind.vector
        assert kind_from_name("Quaternion") is None

    def test_numeric_class(self) -> None:
        assert is_assignable(ValueKind.int16, ValueKind.decimal)
        assert is_assignable(ValueKind.string, ValueKind.any)
        assert not is_assignable(ValueKind.boolean, ValueKind.integer)
        assert not is_assignable(ValueKind.string, ValueKind.float)


class TestCoercion:
    def test_for_provider(self) -> None:
        assert for_provider(Decimal("2.5")) == 2.5
        assert for_provider("true") is True
        assert for_provider(" 12 ") == 12
        assert for_provider("abc") == "abc"

    def test_to_bool(self) -> None:
        assert to_bool(None) is False
        assert to_bool(2) is True
        assert to_bool("0") is False
        assert to_bool("False") is False
        assert to_bool("abc") is False

    def test_parse_data_value(self) -> None:
        assert parse_data_value(DataFieldType.integer, "42") == 42
        assert parse_data_value(DataFieldType.float, "2") == 2.0
        assert parse_data_value(DataFieldType.boolean, "1") is True
        assert parse_data_value(DataFieldType.integer, "") == 0
        assert parse_data_value(DataFieldType.float, "junk") == 0.0

    def test_coerce_errors(self) -> None:
        with pytest.raises(ValueError):
            coerce_to_kind(math.inf, ValueKind.integer)
        with pytest.raises(ValueError):
            coerce_to_kind(-1, ValueKind.uint8)
        with pytest.raises(TypeError):
            coerce_to_kind("abc", ValueKind.float)

    def test_coerce_to_string(self) -> None:
        assert coerce_to_kind(2.0, ValueKind.string) == "2"

    def test_format_value(self) -> None:
        assert format_value(None) == ""
        assert format_value(True) == "true"
        assert format_value(3.0) == "3"
        assert format_value(0.1 + 0.2) == "0.3"
        assert format_value((1.0, 2.5)) == "(1, 2.5)"
