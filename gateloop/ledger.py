"""Progress ledger parsing and state classification.

Reads the markdown task table in the progress ledger (PROGRESS.md) and
reduces it to an orchestration state, task statistics or the current task.
Parsing is tolerant: rows that do not look like task rows are skipped,
never raised on.

Repeated reads of the same file within a short window are served from a
cache so a status inspection does not re-read the file for every question.
"""

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path

from gateloop.models import (
    GateFailed,
    OrchestrationState,
    TaskRecord,
    TaskStats,
    TaskStatus,
)

logger = logging.getLogger(__name__)

# Default cache TTL in seconds
DEFAULT_TTL = 0.2

TASK_ID_PATTERN = re.compile(r"^TASK_\d+$", re.IGNORECASE)

# Split segments a row needs, counting the empty one before the first '|'
MIN_ROW_SEGMENTS = 4

# Status may sit right after the title or after an optional file column
STATUS_SEARCH_START = 3
STATUS_SEARCH_END = 5

STATUS_SYNONYMS: dict[str, TaskStatus] = {
    "COMPLETE": TaskStatus.COMPLETE,
    "COMPLETED": TaskStatus.COMPLETE,
    "DONE": TaskStatus.COMPLETE,
    "NOT STARTED": TaskStatus.NOT_STARTED,
    "IN PROGRESS": TaskStatus.IN_PROGRESS,
    "IN REVIEW": TaskStatus.IN_REVIEW,
    "BLOCKED": TaskStatus.BLOCKED,
}

FIX_SECTION_HEADING = "### For Fix Agent"

# Maximum characters for the Primary Error field of the fix notes
MAX_ERROR_LENGTH = 500


@dataclass
class _CacheEntry:
    lines: list[str]
    timestamp: float
    ttl: float


_cache: dict[Path, _CacheEntry] = {}


def reset_cache() -> None:
    """Drop all cached ledger reads."""
    _cache.clear()


def _read_lines(
    path: Path, force_refresh: bool = False, ttl: float = DEFAULT_TTL
) -> list[str] | None:
    """Read ledger lines, using the cache within its TTL.

    Returns:
        Lines without line terminators, or None if the file does not exist

    Raises:
        OSError: For I/O failures other than the file being absent
    """
    key = path.resolve()
    if not path.exists():
        _cache.pop(key, None)
        return None

    now = time.monotonic()
    entry = _cache.get(key)
    if entry is not None and not force_refresh and now - entry.timestamp < entry.ttl:
        return entry.lines

    lines = path.read_text(encoding="utf-8").splitlines()
    _cache[key] = _CacheEntry(lines=lines, timestamp=now, ttl=ttl)
    return lines


def _normalize_status(cell: str) -> TaskStatus | None:
    key = re.sub(r"[\s_]+", " ", cell.strip()).upper()
    return STATUS_SYNONYMS.get(key)


def parse_ledger(lines: list[str]) -> list[TaskRecord]:
    """Extract task records from ledger lines.

    A task row starts with '|', has an identifier matching TASK_<digits> and
    a recognized status among the cells after the title. Anything else is
    skipped: header rows, separator rows, milestone rows (MVT_*), rows from
    other tables and rows with too few columns.

    Args:
        lines: Ledger content split into lines (CR/LF already stripped)

    Returns:
        Task records in file order
    """
    records: list[TaskRecord] = []
    for line in lines:
        stripped = line.strip()
        if not stripped.startswith("|"):
            continue

        cols = stripped.split("|")
        if len(cols) < MIN_ROW_SEGMENTS:
            continue

        task_id = cols[1].strip()
        if not TASK_ID_PATTERN.match(task_id):
            continue

        status = None
        status_index = -1
        for i in range(STATUS_SEARCH_START, min(len(cols), STATUS_SEARCH_END + 1)):
            status = _normalize_status(cols[i])
            if status is not None:
                status_index = i
                break
        if status is None:
            continue

        review_status = None
        if status_index + 1 < len(cols):
            review_status = cols[status_index + 1].strip() or None

        records.append(
            TaskRecord(
                id=task_id,
                title=cols[2].strip(),
                status=status,
                review_status=review_status,
                position=len(records),
            )
        )
    return records


def _load_records(
    path: Path, force_refresh: bool, ttl: float
) -> list[TaskRecord] | None:
    lines = _read_lines(path, force_refresh=force_refresh, ttl=ttl)
    if lines is None:
        return None
    return parse_ledger(lines)


def classify(
    path: Path, *, force_refresh: bool = False, ttl: float = DEFAULT_TTL
) -> OrchestrationState:
    """Reduce the ledger to a single orchestration state.

    Priority is BLOCKED > IN_REVIEW > WORK_LEFT > DONE over the whole ledger,
    so one blocked task makes the whole ledger BLOCKED.

    Args:
        path: Ledger file
        force_refresh: Bypass the read cache
        ttl: Cache lifetime in seconds for this read

    Returns:
        NO_PROGRESS if the file is missing; DONE if it has no task rows left
        to do (including when no task rows parse at all)
    """
    records = _load_records(path, force_refresh, ttl)
    if records is None:
        return OrchestrationState.NO_PROGRESS

    if not records:
        logger.warning(f"No task rows found in {path}; treating ledger as DONE")
        return OrchestrationState.DONE

    statuses = {r.status for r in records}
    if TaskStatus.BLOCKED in statuses:
        return OrchestrationState.BLOCKED
    if TaskStatus.IN_REVIEW in statuses:
        return OrchestrationState.IN_REVIEW
    if statuses & {TaskStatus.NOT_STARTED, TaskStatus.IN_PROGRESS}:
        return OrchestrationState.WORK_LEFT
    return OrchestrationState.DONE


def statistics(
    path: Path, *, force_refresh: bool = False, ttl: float = DEFAULT_TTL
) -> TaskStats:
    """Count tasks by status.

    Returns:
        TaskStats where remaining is not started plus in progress. All zero
        when the file is missing.
    """
    records = _load_records(path, force_refresh, ttl)
    if not records:
        return TaskStats()

    counts = {status: 0 for status in TaskStatus}
    for record in records:
        counts[record.status] += 1

    return TaskStats(
        total=len(records),
        completed=counts[TaskStatus.COMPLETE],
        remaining=counts[TaskStatus.NOT_STARTED] + counts[TaskStatus.IN_PROGRESS],
        in_review=counts[TaskStatus.IN_REVIEW],
        blocked=counts[TaskStatus.BLOCKED],
    )


def current_task(
    path: Path, *, force_refresh: bool = False, ttl: float = DEFAULT_TTL
) -> TaskRecord | None:
    """Return the first task (top to bottom) that is in progress."""
    records = _load_records(path, force_refresh, ttl)
    if not records:
        return None
    for record in records:
        if record.status == TaskStatus.IN_PROGRESS:
            return record
    return None


def _truncate_error(text: str, max_length: int = MAX_ERROR_LENGTH) -> str:
    one_line = re.sub(r"[\r\n]+", " ", text).strip()
    if len(one_line) <= max_length:
        return one_line
    return one_line[:max_length] + "…"


# Next "## " / "### " heading or horizontal rule after the fix section
_NEXT_SECTION = re.compile(r"\n(?=#{2,3}\s|---\s*$)", re.MULTILINE)


def write_failure_notes(path: Path, gate_failure: GateFailed) -> None:
    """Fill the "### For Fix Agent" section of the ledger from a gate failure.

    Replaces everything between the section heading and the next heading or
    horizontal rule with a table naming the current task, the failed
    commands, the primary error and a root-cause hint. A missing ledger or
    section is logged and ignored.
    """
    if not path.exists():
        logger.warning(f"Ledger {path} not found, skipping failure notes")
        return

    content = path.read_text(encoding="utf-8")
    section_index = content.find(FIX_SECTION_HEADING)
    if section_index == -1:
        logger.warning(
            f'"{FIX_SECTION_HEADING}" section not found in {path}, '
            "skipping failure notes"
        )
        return

    task = current_task(path, force_refresh=True)
    task_value = f"{task.id} - {task.title}" if task else "-"

    failed = [r for r in gate_failure.results if not r.is_success]
    failed_value = ", ".join(r.command for r in failed) if failed else "-"
    if failed:
        first = failed[0]
        error_value = _truncate_error(first.error or gate_failure.error)
        hint_value = f"`{first.command}` exited with code {first.exit_code}"
    else:
        error_value = "-"
        hint_value = "-"

    table = "\n".join(
        [
            FIX_SECTION_HEADING,
            "",
            "| Field           | Value |",
            "| --------------- | ----- |",
            f"| Task            | {task_value} |",
            f"| Failed Gate     | {failed_value} |",
            f"| Primary Error   | {error_value} |",
            f"| Root Cause Hint | {hint_value} |",
        ]
    )

    after_heading = section_index + len(FIX_SECTION_HEADING)
    match = _NEXT_SECTION.search(content, after_heading)
    end = match.start() if match else len(content)
    tail = content[end:] if match else ("\n" if content.endswith("\n") else "")

    path.write_text(content[:section_index] + table + tail, encoding="utf-8")
    reset_cache()
    logger.info(f"Wrote gate failure notes for {len(failed)} command(s) to {path}")
