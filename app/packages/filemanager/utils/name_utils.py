"""Name utilities: normalize and validate item names.

These helpers centralize the rules used by folder creation, uploads and renames:
- names are trimmed before validation and storage;
- empty, reserved ('.', '..'), over-long names and names containing
  path separators, control characters or `<>:"/\\|?*` are rejected.
"""

from __future__ import annotations

from typing import Optional

from app.packages.filemanager.core.constants import INVALID_NAME_CHARS, MAX_NAME_LENGTH, RESERVED_NAMES
from app.packages.filemanager.core.exceptions import InvalidNameError


def normalize_name(raw: str | None) -> str:
    """Return the trimmed name, raising ``InvalidNameError`` when it breaks the naming rules."""
    name = (raw or "").strip()
    problem = name_problem(name)
    if problem:
        raise InvalidNameError(problem)
    return name


def name_problem(name: str) -> Optional[str]:
    if not name:
        return "名称不能为空"
    if len(name) > MAX_NAME_LENGTH:
        return f"名称过长（最多 {MAX_NAME_LENGTH} 个字符）"
    if name in RESERVED_NAMES:
        return "名称不能为 '.' 或 '..'"
    if any(ch in INVALID_NAME_CHARS or ord(ch) < 32 for ch in name):
        return "名称包含非法字符"
    return None


def upload_basename(filename: str | None) -> str:
    # 浏览器可能带上客户端路径（如 Windows 的 C:\\fakepath\\a.txt），仅保留最后一段
    raw = (filename or "").replace("\\", "/")
    return raw.rsplit("/", 1)[-1]
