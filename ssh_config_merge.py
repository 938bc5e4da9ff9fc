"""
SSH client config merge.

Rewrites one ``Host`` section of an OpenSSH client config (``~/.ssh/config``)
while leaving every other line of the file alone. The wizard owns exactly one
section, the managed ``Host github.com`` block; re-running it replaces that
block in place instead of appending another copy.

    >>> block = HostBlock("github.com", [("HostName", "github.com"), ("User", "git")])
    >>> print(merge_host_block("Host example.com\\n    User bob\\n", block), end="")
    Host example.com
        User bob
    <BLANKLINE>
    Host github.com
        HostName github.com
        User git
"""

import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

INDENT = "    "

# Options that some OpenSSH builds reject outright (UseKeychain only exists on
# Apple's fork). Removed from every block on each merge.
STRIPPED_KEYS = ("UseKeychain",)

# `Host pattern`, `Host=pattern` and `Match ...` all open a new section.
HEADER_RE = re.compile(r"^\s*(host|match)(?:\s*=\s*|\s+)(.*?)\s*$", re.IGNORECASE)
KEYWORD_RE = re.compile(r"^\s*([A-Za-z][A-Za-z0-9]*)")


class ConfigDecodeError(ValueError):
    """The config file exists but is not valid UTF-8 text."""


@dataclass
class HostBlock:
    """A ``Host`` section: its pattern and ordered ``(key, value)`` options."""

    pattern: str
    options: list = field(default_factory=list)

    def lines(self):
        return [f"Host {self.pattern}"] + [
            f"{INDENT}{key} {value}" for key, value in self.options
        ]

    def render(self):
        return "\n".join(self.lines()) + "\n"


# ─── Line classification ─────────────────────────────────────────────────────
def _keyword(line):
    m = KEYWORD_RE.match(line)
    return m.group(1).lower() if m else None


def _is_header(line):
    return HEADER_RE.match(line) is not None


def _is_filler(line):
    """Blank and comment-only lines."""
    stripped = line.strip()
    return not stripped or stripped.startswith("#")


def _header_patterns(line):
    """Patterns of a ``Host`` header, or None for anything else."""
    m = HEADER_RE.match(line)
    if not m or m.group(1).lower() != "host":
        return None
    return [p.strip('"').lower() for p in m.group(2).split()]


def _is_managed_header(line, pattern):
    # Multi-pattern headers like `Host github.com gist.github.com` are shared
    # with the user and never treated as ours.
    return _header_patterns(line) == [pattern.lower()]


def _split_option(line):
    parts = re.split(r"\s*=\s*|\s+", line.strip(), maxsplit=1)
    return parts[0], (parts[1] if len(parts) > 1 else "")


def _split_lines(text):
    """Split on LF only; returns the lines and the newline to re-join with.

    Other characters str.splitlines() breaks on (form feed, U+2028, ...) stay
    inside their line. Files using CRLF keep CRLF.
    """
    newline = "\r\n" if "\r\n" in text else "\n"
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    if newline == "\r\n":
        lines = [l[:-1] if l.endswith("\r") else l for l in lines]
    return lines, newline


def _block_end(lines, start):
    """Index of the next section header after ``start`` (or len(lines))."""
    end = start + 1
    while end < len(lines) and not _is_header(lines[end]):
        end += 1
    return end


# ─── Merge ───────────────────────────────────────────────────────────────────
def merge_host_block(text, block, strip_keys=STRIPPED_KEYS):
    """Return ``text`` with ``block`` merged in.

    The first existing section for ``block.pattern`` is replaced in place and
    any later duplicates are dropped; without one the block is appended after
    a blank line. Lines whose keyword is in ``strip_keys`` are removed from
    every section. Blank/comment lines trailing the old managed section are
    kept since they usually introduce whatever follows it.
    """
    stripped = {key.lower() for key in strip_keys}
    wanted = HostBlock(
        block.pattern,
        [(k, v) for k, v in block.options if k.lower() not in stripped],
    )

    lines, newline = _split_lines(text)
    out = []
    placed = False
    i = 0
    while i < len(lines):
        line = lines[i]
        if not _is_managed_header(line, block.pattern):
            if _keyword(line) not in stripped:
                out.append(line)
            i += 1
            continue

        end = _block_end(lines, i)
        body = lines[i + 1:end]
        tail = len(body)
        while tail > 0 and _is_filler(body[tail - 1]):
            tail -= 1
        if not placed:
            out.extend(wanted.lines())
            placed = True
        out.extend(body[tail:])
        i = end

    while out and not out[-1].strip():
        out.pop()

    if not placed:
        if out:
            out.append("")
        out.extend(wanted.lines())

    return newline.join(out) + newline


def find_host_block(text, pattern):
    """Parse the first single-pattern ``Host`` section for ``pattern``."""
    lines, _ = _split_lines(text)
    for i, line in enumerate(lines):
        if _is_managed_header(line, pattern):
            body = lines[i + 1:_block_end(lines, i)]
            return HostBlock(
                pattern,
                [_split_option(l) for l in body if not _is_filler(l)],
            )
    return None


# ─── File I/O ────────────────────────────────────────────────────────────────
def read_config(path):
    """Read a config file as text. A missing file reads as empty."""
    path = Path(path)
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        return ""
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ConfigDecodeError(f"{path} is not valid UTF-8 text: {e}") from e


def write_config(path, content):
    """Atomically replace ``path`` with ``content`` (mode 0600).

    A symlinked config (dotfile managers) is written through to its target
    so the link survives.
    """
    path = Path(path).resolve()
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def update_config_file(path, block, strip_keys=STRIPPED_KEYS):
    """Merge ``block`` into the file at ``path``. Returns True if it changed."""
    current = read_config(path)
    merged = merge_host_block(current, block, strip_keys)
    if merged == current:
        return False
    write_config(path, merged)
    return True
