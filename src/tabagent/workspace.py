"""
Workspace - File and shell actions rooted at a working directory.

The working directory is owned by this object, not by process-wide state:
relative paths given to any action resolve against it, and /cd in the CLI
simply changes it. Every action returns text; expected failures (missing
file, ambiguous edit, failing command) come back as "ERROR: ..." strings
so the model can react to them.
"""

import fnmatch
import logging
import os
import re
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

MAX_READ_BYTES = 2 * 1024 * 1024
MAX_LIST_DEPTH = 3
MAX_SEARCH_MATCHES = 100
COMMAND_TIMEOUT = 60
MAX_COMMAND_OUTPUT = 10000
MAX_FAILURE_STREAM = 5000

LIST_SKIP = {"node_modules", ".git", "dist", ".DS_Store"}
SEARCH_SKIP_DIRS = {"node_modules", ".git", "dist", ".next", "__pycache__"}


def _format_size(size: int) -> str:
    return f"{size}B" if size < 1024 else f"{size / 1024:.1f}KB"


class Workspace:
    """File and shell tools bound to one working directory."""

    def __init__(self, working_dir: str | Path | None = None) -> None:
        self._working_dir = Path(working_dir or os.getcwd()).resolve()

    @property
    def working_dir(self) -> Path:
        return self._working_dir

    def change_dir(self, path: str | Path) -> Path:
        """Move the working directory; relative paths resolve against the current one."""
        target = self.resolve(str(path))
        if not target.is_dir():
            raise NotADirectoryError(f"Not a directory: {target}")
        self._working_dir = target
        logger.info(f"Working directory changed to {target}")
        return target

    def resolve(self, path: str | None) -> Path:
        if not path:
            return self._working_dir
        return (self._working_dir / Path(path).expanduser()).resolve()

    def read_file(self, path: str, offset: int | None = None, limit: int | None = None) -> str:
        """Read a file with right-aligned line numbers; offset is 1-based."""
        resolved = self.resolve(path)
        if not resolved.exists():
            return f"ERROR: File not found: {resolved}"
        if resolved.is_dir():
            return f"ERROR: {resolved} is a directory, not a file. Use list_files instead."
        size = resolved.stat().st_size
        if size > MAX_READ_BYTES:
            return (
                f"ERROR: File is too large ({size / 1024 / 1024:.1f}MB). "
                "Use offset/limit to read portions."
            )

        lines = resolved.read_text(encoding="utf-8", errors="replace").split("\n")
        start = max(0, (offset or 1) - 1)
        end = start + limit if limit else len(lines)
        numbered = "\n".join(
            f"{start + i + 1:>5} │ {line}" for i, line in enumerate(lines[start:end])
        )

        header = f"File: {resolved} ({len(lines)} lines total)"
        if start > 0 or end < len(lines):
            return f"{header}\nShowing lines {start + 1}-{min(end, len(lines))}:\n\n{numbered}"
        return f"{header}\n\n{numbered}"

    def write_file(self, path: str, content: str) -> str:
        resolved = self.resolve(path)
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_text(content, encoding="utf-8")
        line_count = len(content.split("\n"))
        return f"Written {line_count} lines to {resolved}"

    def edit_file(self, path: str, old_string: str, new_string: str) -> str:
        """Replace old_string, which must occur exactly once."""
        resolved = self.resolve(path)
        if not resolved.is_file():
            return f"ERROR: File not found: {resolved}"

        content = resolved.read_text(encoding="utf-8")
        count = content.count(old_string) if old_string else 0
        if count == 0:
            return (
                f"ERROR: old_string not found in {resolved}. "
                "Make sure it matches exactly (including whitespace/indentation)."
            )
        if count > 1:
            return (
                f"ERROR: old_string found {count} times in {resolved}. It must be unique. "
                "Include more surrounding context to narrow it down."
            )

        resolved.write_text(content.replace(old_string, new_string, 1), encoding="utf-8")
        old_lines = len(old_string.split("\n"))
        new_lines = len(new_string.split("\n"))
        return f"Edited {resolved}: replaced {old_lines} line(s) with {new_lines} line(s)."

    def list_files(self, path: str | None = None, recursive: bool = False) -> str:
        root = self.resolve(path or ".")
        if not root.is_dir():
            return f"ERROR: Directory not found: {root}"

        results: list[str] = []

        def walk(directory: Path, depth: int) -> None:
            if depth > MAX_LIST_DEPTH:
                return
            try:
                entries = sorted(directory.iterdir(), key=lambda p: p.name)
            except OSError:
                return
            for entry in entries:
                if entry.name in LIST_SKIP:
                    if depth == 0:
                        results.append(f"  [dir]  {entry.name}/ (skipped)")
                    continue
                rel = entry.relative_to(root).as_posix()
                try:
                    if entry.is_dir():
                        results.append(f"  [dir]  {rel}/")
                        if recursive:
                            walk(entry, depth + 1)
                    else:
                        results.append(f"  [file] {rel} ({_format_size(entry.stat().st_size)})")
                except OSError:
                    continue

        walk(root, 0)
        if not results:
            return f"Directory is empty: {root}"
        return f"Contents of {root}:\n\n" + "\n".join(results)

    def search_files(
        self,
        pattern: str,
        path: str | None = None,
        file_pattern: str | None = None,
    ) -> str:
        """Regex search across files, like grep -rn, capped at 100 matches."""
        root = self.resolve(path or ".")
        try:
            regex = re.compile(pattern)
        except re.error as e:
            return f"ERROR: Invalid pattern {pattern!r}: {e}"

        glob = file_pattern or "*"
        matches: list[str] = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in SEARCH_SKIP_DIRS)
            for filename in sorted(filenames):
                if not fnmatch.fnmatch(filename, glob):
                    continue
                file_path = Path(dirpath) / filename
                try:
                    with open(file_path, encoding="utf-8") as f:
                        for line_number, line in enumerate(f, start=1):
                            if regex.search(line):
                                rel = file_path.relative_to(root).as_posix()
                                matches.append(f"{rel}:{line_number}:{line.rstrip()}")
                                if len(matches) >= MAX_SEARCH_MATCHES:
                                    break
                except (OSError, UnicodeDecodeError):
                    # Binary or unreadable
                    continue
                if len(matches) >= MAX_SEARCH_MATCHES:
                    break
            if len(matches) >= MAX_SEARCH_MATCHES:
                break

        if not matches:
            return f'No matches found for "{pattern}" in {root}'
        plus = "+" if len(matches) >= MAX_SEARCH_MATCHES else ""
        return f'Found {len(matches)}{plus} matches for "{pattern}":\n\n' + "\n".join(matches)

    def run_command(self, command: str, cwd: str | None = None) -> str:
        exec_dir = self.resolve(cwd) if cwd else self._working_dir
        logger.info(f"Running command in {exec_dir}: {command}")
        try:
            result = subprocess.run(
                command,
                shell=True,
                cwd=exec_dir,
                capture_output=True,
                text=True,
                timeout=COMMAND_TIMEOUT,
                env={**os.environ, "FORCE_COLOR": "0"},
            )
        except subprocess.TimeoutExpired:
            return f"Command failed (timed out after {COMMAND_TIMEOUT} seconds)"

        stdout = result.stdout.strip()
        stderr = result.stderr.strip()
        if result.returncode != 0:
            message = f"Command failed (exit code {result.returncode})"
            if stdout:
                message += f"\n\nstdout:\n{stdout[:MAX_FAILURE_STREAM]}"
            if stderr:
                message += f"\n\nstderr:\n{stderr[:MAX_FAILURE_STREAM]}"
            return message

        output = stdout
        if not output:
            return "(command completed with no output)"
        if len(output) > MAX_COMMAND_OUTPUT:
            return output[:MAX_COMMAND_OUTPUT] + f"\n\n... (output truncated at {MAX_COMMAND_OUTPUT} chars)"
        return output
