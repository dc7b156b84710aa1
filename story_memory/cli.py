from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table
from loguru import logger

from story_memory.config import load_config
from story_memory.config.loader import masked_env_snapshot
from story_memory.domain.models import ContextRequest
from story_memory.llm.prompts import format_memory_context
from story_memory.memory.knowledge import get_character_state
from story_memory.memory.retrieval import build_basic_context
from story_memory.project.loader import (
    build_memory_service,
    import_project,
    list_projects,
    load_project_store,
    replace_chapter_content,
)
from story_memory.storage.db import init_db_service, shutdown_db_service
from story_memory.utils.json_utils import dumps_pretty
from story_memory.utils.logging import setup_logging

console = Console()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="story-memory")
    parser.add_argument("--config", type=Path, default=None, help="Path to custom config YAML")
    parser.add_argument("--profile", type=str, default=None, help="Config profile name")
    parser.add_argument("--data-dir", type=Path, default=None, help="Override data directory")
    parser.add_argument("--db-path", type=Path, default=None, help="Override SQLite database path")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("config", help="Validate and print effective config")

    import_parser = subparsers.add_parser("import", help="Load a project JSON document into SQLite")
    import_parser.add_argument("--input", type=Path, required=True, help="Path to project JSON file")

    subparsers.add_parser("list", help="List stored projects with memory counts")

    save_parser = subparsers.add_parser("save-chapter", help="Save a chapter and refresh its story memory")
    save_parser.add_argument("--project-id", type=str, required=True, help="Project id")
    save_parser.add_argument("--chapter-id", type=str, required=True, help="Chapter id")
    save_parser.add_argument("--content-file", type=Path, default=None, help="Replace chapter text with this file")

    context_parser = subparsers.add_parser("context", help="Select story memory for a generation request")
    context_parser.add_argument("--project-id", type=str, required=True, help="Project id")
    context_parser.add_argument("--chapter", type=int, required=True, help="Current chapter number")
    context_parser.add_argument("--pov", type=str, default=None, help="POV character id")
    context_parser.add_argument("--task", type=str, default=None, help="Task description")
    context_parser.add_argument("--focus", type=str, default=None, help="Generation focus")
    context_parser.add_argument("--scene", type=str, default=None, help="Current scene")
    context_parser.add_argument("--basic", action="store_true", help="Skip the collaborator and use the basic context")

    state_parser = subparsers.add_parser("character-state", help="Print a character's current knowledge snapshot")
    state_parser.add_argument("--project-id", type=str, required=True, help="Project id")
    state_parser.add_argument("--character-id", type=str, required=True, help="Character id")

    return parser


def _build_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if args.data_dir:
        overrides["app"] = {"data_dir": str(args.data_dir)}
    if args.db_path:
        overrides["storage"] = {"sqlite_path": str(args.db_path)}
    return overrides


def _print_config(config) -> None:
    env_snapshot = masked_env_snapshot(config)
    console.print(Panel(Pretty(config.model_dump(mode="json")), title="Effective Config"))
    console.print(Panel(Pretty(env_snapshot), title="Env Snapshot"))


def _context_request(args: argparse.Namespace) -> ContextRequest:
    return ContextRequest(
        current_chapter_number=args.chapter,
        current_scene=args.scene,
        pov_character_id=args.pov,
        task_description=args.task,
        focus=args.focus,
    )


async def _main_async() -> None:
    parser = _build_parser()
    args = parser.parse_args()

    overrides = _build_overrides(args)
    config = load_config(
        config_path=args.config,
        profile=args.profile,
        overrides=overrides,
    )

    setup_logging(config.app.log_level)
    logger.info("Loaded configuration")

    await init_db_service(config.storage.sqlite_path)

    try:
        if args.command == "config":
            _print_config(config)
            return

        if args.command == "import":
            result = await import_project(args.input)
            table = Table(title="Import Summary", show_header=True, header_style="bold")
            table.add_column("Metric")
            table.add_column("Value")
            table.add_row("Project ID", result.id)
            table.add_row("Inserted", "yes" if result.inserted else "no (replaced)")
            console.print(table)
            return

        if args.command == "list":
            rows = await list_projects()
            table = Table(title="Projects", show_header=True, header_style="bold")
            table.add_column("ID")
            table.add_column("Name")
            table.add_column("Chapters", justify="right")
            table.add_column("Summaries", justify="right")
            table.add_column("Knowledge states", justify="right")
            table.add_column("Updated")
            for row in rows:
                table.add_row(
                    row.id,
                    row.name,
                    str(row.chapters),
                    str(row.chapter_summaries),
                    str(row.character_knowledge_states),
                    str(row.updated_at),
                )
            console.print(table)
            return

        if args.command == "save-chapter":
            store = await load_project_store(args.project_id)
            if args.content_file is not None:
                chapter = await replace_chapter_content(
                    store,
                    args.chapter_id,
                    args.content_file.read_text(encoding="utf-8"),
                )
            else:
                chapter = store.project.find_chapter(args.chapter_id)
                if chapter is None:
                    raise ValueError(f"Chapter not found: {args.chapter_id}")

            service = build_memory_service(store, config)
            report = await service.on_chapter_saved(chapter)

            table = Table(title="Chapter Save Summary", show_header=True, header_style="bold")
            table.add_column("Metric")
            table.add_column("Value")
            table.add_row("Project ID", store.project.id)
            table.add_row("Chapter", f"{chapter.number} ({chapter.id})")
            table.add_row("Words", str(chapter.effective_word_count))
            table.add_row("Summary outcome", report.outcome.value)
            table.add_row("Knowledge snapshots added", str(len(report.knowledge_updates)))
            table.add_row("Last error", service.status.error or "-")
            console.print(table)
            return

        if args.command == "context":
            store = await load_project_store(args.project_id)
            request = _context_request(args)
            if args.basic:
                context = build_basic_context(request, store.project, config.memory)
            else:
                service = build_memory_service(store, config)
                context = await service.get_relevant_context(request)

            console.print(Panel(dumps_pretty(context.to_payload()), title="Story Memory Context"))
            console.print(Panel(format_memory_context(context, store.project.characters), title="Prompt Section"))
            return

        if args.command == "character-state":
            store = await load_project_store(args.project_id)
            state = get_character_state(store.project.character_knowledge_states, args.character_id)
            if state is None:
                console.print(Panel(f"No knowledge snapshots for {args.character_id}", title="Character State"))
                return
            console.print(Panel(dumps_pretty(state.to_payload()), title=f"Character State (chapter {state.as_of_chapter_number})"))
            return
    finally:
        await shutdown_db_service()


def main() -> None:
    asyncio.run(_main_async())


if __name__ == "__main__":
    main()
