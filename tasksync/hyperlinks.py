from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import quote

from tasksync.models import HyperlinkMode

MARKDOWN_LINK_RE = re.compile(r"\[([^\]]*)\]\((https?://[^)]+)\)")
BLOCK_ID_RE = re.compile(r"^task-[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")


@dataclass
class ProcessedDescription:
    summary: str
    links_block: str = ""


def process_description(description: str, mode: HyperlinkMode | str) -> ProcessedDescription:
    mode = HyperlinkMode(mode)
    if mode == HyperlinkMode.KEEP:
        return ProcessedDescription(summary=description)
    links = MARKDOWN_LINK_RE.findall(description)
    if not links:
        return ProcessedDescription(summary=description)
    stripped = MARKDOWN_LINK_RE.sub(lambda m: m.group(1), description)
    stripped = re.sub(r"\s+", " ", stripped).strip()
    if not stripped:
        return ProcessedDescription(summary=description)
    links_block = ""
    if mode == HyperlinkMode.MOVE:
        rows = [f"- {label or url}: {url}" for label, url in links]
        links_block = "Links:\n" + "\n".join(rows)
    return ProcessedDescription(summary=stripped, links_block=links_block)


def build_obsidian_uri(vault_name: str, file_path: str, block_id: str) -> str:
    if not vault_name.strip():
        raise ValueError("Vault name is required")
    if not file_path.strip():
        raise ValueError("File path is required")
    if not BLOCK_ID_RE.match(block_id or ""):
        raise ValueError(f"Invalid block id: {block_id!r}")
    return (
        f"obsidian://open?vault={quote(vault_name, safe='')}"
        f"&file={quote(file_path, safe='')}&block={block_id}"
    )


def build_remote_description(links_block: str = "", uri: str = "") -> str:
    parts = [part for part in (links_block, f"Obsidian Link: {uri}" if uri else "") if part]
    return "\n\n".join(parts)
