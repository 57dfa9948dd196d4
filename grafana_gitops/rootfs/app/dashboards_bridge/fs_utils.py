from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ""


def json_dump(data: Any) -> str:
    rendered = json.dumps(data, indent="\t", sort_keys=True, ensure_ascii=False)
    return rendered + "\n"


def rewrite_file(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` so readers never see a partial file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def remove_file(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def list_json_files(root: Path, subdir: str) -> list[str]:
    directory = root / subdir
    if not directory.is_dir():
        return []
    return sorted(
        f"{subdir}/{entry.name}"
        for entry in directory.iterdir()
        if entry.is_file() and entry.name.endswith(".json")
    )
