"""Windows command-line quoting.

``CreateProcess`` takes a single command-line string rather than an argument
vector. The child's C runtime splits that string back into ``argv``, so every
argument has to be escaped so that the split reproduces it exactly.

The functions here are pure and are exercised on every platform.
"""

from __future__ import annotations

from collections.abc import Iterable

_QUOTE_TRIGGERS = frozenset(" \t\n\v")


def needs_quoting(token: str) -> bool:
    """Return True if ``token`` must be wrapped in double quotes."""
    return not token or any(ch in _QUOTE_TRIGGERS for ch in token)


def quote_argument(token: str) -> str:
    """Wrap ``token`` in double quotes, escaping quotes and backslash runs.

    Backslashes are literal unless they precede a double quote, so a run of
    backslashes is doubled when it is followed by a quote (which is then
    escaped) or by the closing quote at the end of the token.
    """
    out = ['"']
    i = 0
    length = len(token)
    while i < length:
        backslashes = 0
        while i < length and token[i] == "\\":
            backslashes += 1
            i += 1

        if i == length:
            out.append("\\" * (backslashes * 2))
            break
        if token[i] == '"':
            out.append("\\" * (backslashes * 2))
            out.append('\\"')
        else:
            out.append("\\" * backslashes)
            out.append(token[i])
        i += 1
    out.append('"')
    return "".join(out)


def format_argument(token: str) -> str:
    """Quote ``token`` if it needs it, otherwise return it unchanged."""
    return quote_argument(token) if needs_quoting(token) else token


def build_command_line(command: str, args: Iterable[str]) -> str:
    """Join ``command`` and ``args`` into one escaped command line."""
    return " ".join(format_argument(token) for token in (command, *args))


def split_command_line(command_line: str) -> list[str]:
    """Split a command line the way the Microsoft C runtime splits arguments.

    Every token, including the first, is parsed with the argument rules:

    * spaces and tabs outside quotes separate arguments;
    * ``2n`` backslashes before a quote yield ``n`` backslashes and the quote
      toggles quoting; ``2n + 1`` backslashes yield ``n`` backslashes and a
      literal quote;
    * backslashes not followed by a quote are literal;
    * ``""`` inside a quoted region is a literal quote.
    """
    args: list[str] = []
    current: list[str] = []
    in_quotes = False
    has_token = False
    i = 0
    length = len(command_line)

    while i < length:
        ch = command_line[i]
        if ch == "\\":
            end = i
            while end < length and command_line[end] == "\\":
                end += 1
            count = end - i
            if end < length and command_line[end] == '"':
                current.append("\\" * (count // 2))
                if count % 2:
                    current.append('"')
                    end += 1
            else:
                current.append("\\" * count)
            i = end
            has_token = True
        elif ch == '"':
            if in_quotes and i + 1 < length and command_line[i + 1] == '"':
                current.append('"')
                i += 2
            else:
                in_quotes = not in_quotes
                i += 1
            has_token = True
        elif ch in " \t" and not in_quotes:
            if has_token:
                args.append("".join(current))
                current = []
                has_token = False
            i += 1
        else:
            current.append(ch)
            has_token = True
            i += 1

    if has_token:
        args.append("".join(current))
    return args
