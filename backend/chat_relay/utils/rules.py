"""规则模板存储

Review note:
- 模板文件只识别三个段落：`# Prompt Selection` / `# Prompt Information` / `# Prompt Rules`。
- chat_mode 仅允许字母、数字、`-`、`_`，且解析后的路径必须仍在模板目录内。
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional
import logging
import re

logger = logging.getLogger("uvicorn.error")

CHAT_MODE_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
ALLOWED_EXTENSIONS = (".md", ".txt")

PROMPT_SELECTION_HEADER = re.compile(r"^#\s*Prompt Selection\s*$", re.IGNORECASE)
PROMPT_INFO_HEADER = re.compile(r"^#\s*Prompt Information\s*$", re.IGNORECASE)
PROMPT_RULES_HEADER = re.compile(r"^#\s*Prompt Rules\s*$", re.IGNORECASE)

_SECTION_HEADERS = (PROMPT_SELECTION_HEADER, PROMPT_INFO_HEADER, PROMPT_RULES_HEADER)


@dataclass(frozen=True)
class TemplateMeta:
    display_name: str = ""
    prompt_info: str = ""
    rules_only: str = ""


@dataclass(frozen=True)
class ChatTemplate:
    mode_id: str
    path: Path
    content: str
    meta: TemplateMeta


def _is_section_header(line: str) -> bool:
    return any(header.match(line) for header in _SECTION_HEADERS)


def parse_template_meta(content: str) -> TemplateMeta:
    """
    解析模板文件的三个段落

    - Selection: 下一个 `#` 行之前的第一行非空文本
    - Information: 下一个 `#` 行之前的非空行，去首尾空白后以空格拼接
    - Rules: 直到下一个可识别段落标题为止的原文（保留 markdown 标题），去掉开头空行与末尾空白
    """
    lines = (content or "").splitlines()
    display_name = ""
    prompt_info = ""
    rules_only = ""

    i = 0
    while i < len(lines):
        current = lines[i].strip()

        if PROMPT_SELECTION_HEADER.match(current):
            i += 1
            while i < len(lines):
                nxt = lines[i].strip()
                if nxt.startswith("#"):
                    break
                i += 1
                if nxt:
                    display_name = nxt
                    break
            continue

        if PROMPT_INFO_HEADER.match(current):
            i += 1
            parts: List[str] = []
            while i < len(lines):
                nxt = lines[i].strip()
                if nxt.startswith("#"):
                    break
                if nxt:
                    parts.append(nxt)
                i += 1
            prompt_info = " ".join(parts)
            continue

        if PROMPT_RULES_HEADER.match(current):
            i += 1
            rules_lines: List[str] = []
            while i < len(lines) and not _is_section_header(lines[i].strip()):
                rules_lines.append(lines[i])
                i += 1
            while rules_lines and not rules_lines[0].strip():
                rules_lines.pop(0)
            rules_only = "\n".join(rules_lines).rstrip()
            continue

        i += 1

    return TemplateMeta(display_name=display_name, prompt_info=prompt_info, rules_only=rules_only)


class TemplateStore:
    """模板目录读取（只读）"""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def list_mode_ids(self) -> List[str]:
        """扫描模板目录，返回去重排序后的 mode id（文件名去扩展名）"""
        if not self.root.is_dir():
            return []
        names = set()
        for entry in self.root.iterdir():
            if entry.suffix.lower() in ALLOWED_EXTENSIONS:
                names.add(entry.stem)
        return sorted(names)

    def list_modes(self) -> List[Dict[str, str]]:
        """列出全部模式及其元数据，解析失败的文件直接跳过"""
        result = []
        for mode_id in self.list_mode_ids():
            template = self.load(mode_id)
            if template is None:
                continue
            result.append({
                "id": mode_id,
                "displayName": template.meta.display_name or mode_id,
                "promptInfo": template.meta.prompt_info or "",
            })
        return result

    def resolve(self, chat_mode: str) -> Optional[Path]:
        """chat_mode -> 模板文件路径；非法或越界返回 None"""
        if not chat_mode or not isinstance(chat_mode, str):
            return None
        if not CHAT_MODE_PATTERN.match(chat_mode):
            return None

        root = self.root.resolve()
        for ext in ALLOWED_EXTENSIONS:
            candidate = (self.root / f"{chat_mode}{ext}").resolve()
            if not candidate.is_relative_to(root):
                continue
            if candidate.is_file():
                return candidate
        return None

    def load(self, chat_mode: str) -> Optional[ChatTemplate]:
        path = self.resolve(chat_mode)
        if path is None:
            return None
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("rules-load-failed chat_mode=%s path=%s error=%s", chat_mode, path, exc)
            return None
        return ChatTemplate(
            mode_id=chat_mode,
            path=path,
            content=content,
            meta=parse_template_meta(content),
        )
