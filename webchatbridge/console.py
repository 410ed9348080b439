"""
Console output helpers shared by every module.

`print` is routed through `safe_print` so emoji-heavy log lines never crash a request handler
or a streaming generator on consoles with narrow encodings (e.g. GBK).
"""

import builtins as _builtins
import sys

from . import constants


def safe_print(*args, **kwargs) -> None:
    """
    Print without crashing on console encoding issues.
    This must never raise, because it's used inside request handlers/streaming generators.
    """
    try:
        _builtins.print(*args, **kwargs)
    except UnicodeEncodeError:
        file = kwargs.get("file") or sys.stdout
        sep = kwargs.get("sep", " ")
        end = kwargs.get("end", "\n")
        flush = bool(kwargs.get("flush", False))

        try:
            text = sep.join(str(a) for a in args) + end
            encoding = getattr(file, "encoding", None) or getattr(sys.stdout, "encoding", None) or "utf-8"
            safe_text = text.encode(encoding, errors="backslashreplace").decode(encoding, errors="ignore")
            file.write(safe_text)
            if flush:
                try:
                    file.flush()
                except Exception:
                    pass
        except Exception:
            return


def debug_print(*args, **kwargs) -> None:
    """Print debug messages only if DEBUG is True"""
    if constants.DEBUG:
        safe_print(*args, **kwargs)


def preview(text: str, limit: int = 80) -> str:
    text = str(text or "").replace("\n", "\\n")
    return text if len(text) <= limit else text[:limit] + "..."
