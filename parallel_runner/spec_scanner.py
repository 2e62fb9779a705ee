"""
Spec Scanner
============

Discovers work items from spec documents on disk.

Layout scanned: <project>/<specs_dir>/<ID>/spec.md, each file optionally
starting with YAML frontmatter:

    ---
    id: SPEC-002
    title: Add login page
    dependencies: [SPEC-001]
    ---
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union
import logging
import re

import yaml

from parallel_runner.execution_plan import WorkItem

logger = logging.getLogger(__name__)

SPEC_FILE_NAME = "spec.md"
DEFAULT_TITLE = "Untitled SPEC"

_FRONTMATTER = re.compile(r'\A---\s*\n(.*?)\n---\s*(?:\n|\Z)', re.DOTALL)
_HEADING = re.compile(r'^#\s+(.+?)\s*#*\s*$', re.MULTILINE)


def parse_frontmatter(text: str) -> Tuple[Dict[str, Any], str]:
    """
    Split a markdown document into frontmatter and body.

    Raises:
        yaml.YAMLError: If the frontmatter is not valid YAML
    """
    match = _FRONTMATTER.match(text)
    if not match:
        return {}, text

    data = yaml.safe_load(match.group(1)) or {}
    if not isinstance(data, dict):
        raise yaml.YAMLError("frontmatter must be a mapping")
    return data, text[match.end():]


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(',') if part.strip()]
    return [str(v).strip() for v in value if str(v).strip()]


def parse_spec_file(path: Path) -> WorkItem:
    """
    Parse one spec file into a WorkItem.

    The id falls back to the directory name, the title to the first
    top-level heading and then to "Untitled SPEC".
    """
    text = path.read_text(encoding='utf-8')
    meta, body = parse_frontmatter(text)

    item_id = str(meta.get('id') or path.parent.name).strip()

    title = meta.get('title')
    if not title:
        heading = _HEADING.search(body)
        title = heading.group(1).strip() if heading else DEFAULT_TITLE

    return WorkItem(
        id=item_id,
        title=str(title),
        dependencies=_as_list(meta.get('dependencies', meta.get('depends_on'))),
        file_path=str(path),
    )


def scan_work_items(
    project_path: Union[str, Path],
    specs_dir: str = ".moai/specs"
) -> List[WorkItem]:
    """
    Scan a project for spec files.

    Args:
        project_path: Project root
        specs_dir: Directory (relative to the root) holding one folder per spec

    Returns:
        Work items sorted by folder name; unreadable specs are skipped
    """
    root = Path(project_path) / specs_dir
    if not root.is_dir():
        logger.info(f"No specs directory at {root}")
        return []

    items: List[WorkItem] = []
    for spec_dir in sorted(p for p in root.iterdir() if p.is_dir()):
        spec_file = spec_dir / SPEC_FILE_NAME
        if not spec_file.is_file():
            continue
        try:
            items.append(parse_spec_file(spec_file))
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
            logger.warning(f"Skipping {spec_file}: {e}")

    logger.info(f"Found {len(items)} specs in {root}")
    return items
