"""CLI for bulk-importing a directory of Markdown articles into the knowledge base."""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections import Counter
from pathlib import Path
from typing import List

from chatarbor.app import ApplicationState, create_app
from chatarbor.models import IngestOutcome, IngestResult, SourceType


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bulk-import Markdown files into the ChatArbor knowledge base")
    parser.add_argument("directory", help="Directory containing *.md files")
    parser.add_argument(
        "--recursive",
        action="store_true",
        help="Also import Markdown files from subdirectories",
    )
    return parser


def title_from_stem(stem: str) -> str:
    return " ".join(stem.replace("-", " ").replace("_", " ").split())


def collect_payloads(directory: Path, *, recursive: bool = False) -> List[dict]:
    """Build one ingestion payload per non-empty Markdown file, keyed by file stem."""

    pattern = "**/*.md" if recursive else "*.md"
    payloads = []
    for path in sorted(directory.glob(pattern)):
        if not path.is_file():
            continue
        body = path.read_text(encoding="utf-8", errors="ignore").strip()
        if not body:
            continue
        payloads.append(
            {
                "id": path.stem,
                "type": SourceType.TEXT.value,
                "content": body,
                "title": title_from_stem(path.stem),
            }
        )
    return payloads


async def _import(state: ApplicationState, payloads: List[dict]) -> List[IngestResult]:
    try:
        return await state.knowledge_service.add_bulk(payloads)
    finally:
        if state.vector_store is not None:
            await state.vector_store.aclose()
        await state.embedding_service.aclose()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    directory = Path(args.directory).expanduser().resolve()
    if not directory.is_dir():  # pragma: no cover - CLI validation
        parser.error(f"Directory '{args.directory}' does not exist")
        return 1

    payloads = collect_payloads(directory, recursive=args.recursive)
    if not payloads:
        print(f"No Markdown files found in {directory}")
        return 0

    app = create_app()
    state = app.state.services
    results = asyncio.run(_import(state, payloads))

    counts = Counter(result.outcome for result in results)
    print(f"Processed {len(results)} file{'s' if len(results) != 1 else ''} from {directory}")
    for outcome in IngestOutcome:
        print(f"  {outcome.value}: {counts.get(outcome, 0)}")
    for result in results:
        if result.outcome is IngestOutcome.FAILED:
            print(f"  failed {result.id}: {result.reason}")
    return 1 if counts.get(IngestOutcome.FAILED) else 0


if __name__ == "__main__":  # pragma: no cover - CLI entry
    sys.exit(main())
