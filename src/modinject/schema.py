from __future__ import annotations

from typing import TypeAlias

JsonPrimitive: TypeAlias = str | int | float | bool | None
JsonValue: TypeAlias = JsonPrimitive | list["JsonValue"] | dict[str, "JsonValue"]

DESCRIPTOR_CLASS_ENTRY = "module-info.class"
DESCRIPTOR_SOURCE_ENTRY = "module-info.java"
MANIFEST_ENTRY = "META-INF/MANIFEST.MF"
