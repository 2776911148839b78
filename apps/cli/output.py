from __future__ import annotations

import json
from typing import Any, Iterable, Sequence

from llmkit.engine.types import GenerateResponse


def print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True))


def format_table(headers: Sequence[str], rows: Iterable[Sequence[str]]) -> str:
    rows_list = [list(r) for r in rows]
    widths = [len(h) for h in headers]
    for r in rows_list:
        for i, cell in enumerate(r):
            if i < len(widths):
                widths[i] = max(widths[i], len(cell))

    def fmt_row(cols: Sequence[str]) -> str:
        return "  ".join(c.ljust(widths[i]) if i < len(widths) else c for i, c in enumerate(cols)).rstrip()

    out = [fmt_row(list(headers)), fmt_row(["-" * w for w in widths])]
    out.extend(fmt_row(r) for r in rows_list)
    return "\n".join(out)


def format_speed_report(response: GenerateResponse | None) -> str:
    """Token counts, phase times and throughput of the last response."""
    if response is None:
        return "(no response yet)"
    speed = response.speed_report()
    usage = response.usage
    timing = response.timing
    rows = [
        ["prompt", str(usage.prompt_tokens), f"{timing.prefill_s:.2f}", f"{speed['prefill_tok_per_s']:.2f}"],
        ["decode", str(usage.completion_tokens), f"{timing.decode_s:.2f}", f"{speed['decode_tok_per_s']:.2f}"],
        ["total", str(usage.total_tokens), f"{timing.total_s:.2f}", f"{speed['total_tok_per_s']:.2f}"],
        ["chat", str(usage.completion_tokens), f"{timing.total_s:.2f}", f"{speed['chat_tok_per_s']:.2f}"],
    ]
    return format_table(["phase", "tokens", "seconds", "tok/s"], rows)
