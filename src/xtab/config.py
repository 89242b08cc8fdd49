"""Editor configuration, loaded from ``xtab.yaml``."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, Field

from xtab.contracts.common import ValidationError
from xtab.io.fileops import read_text_safe

CONFIG_FILENAME = "xtab.yaml"


class EditorConfig(BaseModel):
    """Tunables for discovery, grid edits and echo detection."""

    model_config = pydantic.ConfigDict(extra="forbid")

    echo_grace_seconds: float = Field(default=2.0, ge=0)
    placeholder_rows: int = Field(default=5, ge=1)
    placeholder_cols: int = Field(default=5, ge=1)
    placeholder_name: str = "Sheet1"
    document_root: str = "Document"
    new_column_base: str = "NewColumn"
    default_row_column: str = "NewColumn"
    foreign_root_markers: list[str] = Field(default_factory=lambda: ["Workbook", "Worksheet"])
    foreign_namespaces: list[str] = Field(
        default_factory=lambda: ["urn:schemas-microsoft-com:office:"]
    )
    emit_events: bool = False
    indent: int = Field(default=2, ge=0, le=8)

    @classmethod
    def from_data(cls, data: dict[str, Any]) -> "EditorConfig":
        try:
            return cls.model_validate(data)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid configuration: {e}") from e

    @classmethod
    def load(cls, path: str | Path) -> "EditorConfig":
        """Load configuration from a YAML file."""
        try:
            data = yaml.safe_load(read_text_safe(path)) or {}
        except yaml.YAMLError as e:
            raise ValidationError(f"Cannot read configuration {path}: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError(f"Configuration {path} must be a mapping")
        return cls.from_data(data)

    @classmethod
    def load_from_dir(cls, directory: str | Path) -> "EditorConfig | None":
        """Load ``xtab.yaml`` from a directory. Returns None if not found."""
        path = Path(directory) / CONFIG_FILENAME
        if path.exists():
            return cls.load(path)
        return None

    @classmethod
    def resolve(cls, explicit: str | Path | None = None, *, near: str | Path | None = None) -> "EditorConfig":
        """Explicit file first, then ``xtab.yaml`` next to ``near``, then defaults."""
        if explicit is not None:
            return cls.load(explicit)
        if near is not None:
            found = cls.load_from_dir(Path(near).resolve().parent)
            if found is not None:
                return found
        return cls()
