from __future__ import annotations

import shlex
from dataclasses import dataclass


@dataclass
class AutoStartOptions:
    prompt: str = ""
    max_turns: int | None = None


def parse_command(command: str) -> list[str]:
    return shlex.split(command)


def parse_auto_start_options(parts: list[str], *, line_prefix: str) -> tuple[AutoStartOptions | None, str | None]:
    """Parse ``/auto start [--turns <n>] [prompt ...]``."""
    opts = AutoStartOptions()
    prompt_tokens: list[str] = []
    idx = 2

    while idx < len(parts):
        token = parts[idx]
        if token == "--turns":
            if idx + 1 >= len(parts):
                return None, f"{line_prefix}Usage: /auto start ... --turns <n>"
            try:
                opts.max_turns = int(parts[idx + 1])
            except ValueError:
                return None, f"{line_prefix}turns must be an integer"
            if opts.max_turns <= 0:
                return None, f"{line_prefix}turns must be positive"
            idx += 2
            continue
        if token.startswith("--"):
            return None, f"{line_prefix}Usage: /auto start [--turns <n>] [prompt]"
        prompt_tokens.append(token)
        idx += 1

    opts.prompt = " ".join(prompt_tokens).strip()
    return opts, None


def split_pipe(text: str) -> tuple[str, str]:
    """``"Alice | You are Alice."`` -> ``("Alice", "You are Alice.")``."""
    head, _, tail = text.partition("|")
    return head.strip(), tail.strip()
