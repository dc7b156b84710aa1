from __future__ import annotations

import sys
from loguru import logger


_DEFAULT_CONTEXT = {
    "project_id": "-",
    "action": "-",
    "chapter_id": "-",
    "chapter_number": "-",
    "character_id": "-",
    "attempt": "-",
}


def _inject_default_context(record: dict) -> None:
    extra = record["extra"]
    for key, value in _DEFAULT_CONTEXT.items():
        extra.setdefault(key, value)


def setup_logging(level: str) -> None:
    """Configure loguru logging for CLI runs."""
    logger.remove()
    logger.configure(patcher=_inject_default_context)
    logger.add(
        sys.stderr,
        level=level,
        backtrace=True,
        diagnose=False,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> "
            "| <level>{level:<8}</level> "
            "| project={extra[project_id]} action={extra[action]} "
            "chapter={extra[chapter_id]} num={extra[chapter_number]} character={extra[character_id]} "
            "attempt={extra[attempt]} "
            "| {message}"
        ),
    )
