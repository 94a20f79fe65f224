# taskpipe/cli.py
from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any, Dict, List, Optional

from .pipelines import run_task
from .registry import resolve_pipeline


def _task_options(args: argparse.Namespace) -> Dict[str, Any]:
    options: Dict[str, Any] = {}
    if args.topk is not None:
        options["topk"] = args.topk
    if args.max_new_tokens is not None:
        options["max_new_tokens"] = args.max_new_tokens
    return options


async def run_cli(args: argparse.Namespace) -> Any:
    pipe = await resolve_pipeline(args.task, args.model)
    inputs = args.texts[0] if len(args.texts) == 1 else args.texts
    return await run_task(pipe, inputs, context=args.context, **_task_options(args))


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Run a taskpipe pipeline on one or more texts.")
    ap.add_argument("task", help="Task name, alias or task_variant (e.g. translation_en_to_de)")
    ap.add_argument("texts", nargs="+", help="Input text(s); the question for question-answering")
    ap.add_argument("--model", default=None, help="Model id or path (default: task default)")
    ap.add_argument("--context", default=None, help="Context passage for question-answering")
    ap.add_argument("--topk", type=int, default=None)
    ap.add_argument("--max-new-tokens", type=int, default=None)
    return ap


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    result = asyncio.run(run_cli(args))
    print(json.dumps(result, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
