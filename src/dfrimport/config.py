"""Runtime configuration for archive imports."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Mapping


DEFAULT_CHUNK_SIZE = 10_000
DEFAULT_PARALLELISM = 1
DEFAULT_OUTPUT_DIR = "."


def _parse_positive_int(*, name: str, raw_value: str, minimum: int = 1) -> int:
    try:
        value = int(raw_value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw_value!r}") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return value


@dataclass(frozen=True, slots=True)
class ImportSettings:
    """Validated defaults for chunk size, worker count and output location."""

    chunk_size: int = DEFAULT_CHUNK_SIZE
    parallelism: int = DEFAULT_PARALLELISM
    output_dir: Path = Path(DEFAULT_OUTPUT_DIR)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ImportSettings":
        source: Mapping[str, str] = os.environ if environ is None else environ

        chunk_size_raw = source.get("DFRIMPORT_CHUNK_SIZE", str(DEFAULT_CHUNK_SIZE)).strip()
        parallelism_raw = source.get("DFRIMPORT_PARALLELISM", str(DEFAULT_PARALLELISM)).strip()
        output_dir_raw = source.get("DFRIMPORT_OUTPUT_DIR", DEFAULT_OUTPUT_DIR).strip()

        if not chunk_size_raw:
            raise ValueError("DFRIMPORT_CHUNK_SIZE cannot be empty")
        if not parallelism_raw:
            raise ValueError("DFRIMPORT_PARALLELISM cannot be empty")
        if not output_dir_raw:
            raise ValueError("DFRIMPORT_OUTPUT_DIR cannot be empty")

        return cls(
            chunk_size=_parse_positive_int(name="DFRIMPORT_CHUNK_SIZE", raw_value=chunk_size_raw),
            parallelism=_parse_positive_int(name="DFRIMPORT_PARALLELISM", raw_value=parallelism_raw),
            output_dir=Path(output_dir_raw),
        )
