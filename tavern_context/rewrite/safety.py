from __future__ import annotations

import logging
import multiprocessing
import re
from dataclasses import dataclass
from functools import lru_cache

from ..errors import RewritePatternError

logger = logging.getLogger("tavern_context.rewrite")

MAX_PATTERN_LENGTH = 1000
PROBE_INPUT = "a" * 100 + "b"
PROBE_TIMEOUT_SECONDS = 0.1
PROBE_START_TIMEOUT_SECONDS = 5.0

KNOWN_CATASTROPHIC_SHAPES = (
    r"(\w+\s*)+",
    r"(a+)+",
    r"(a*)*",
    r"(a+)*",
    r"(a|a)*",
    r"(a|ab)*",
    r"(\d+\s*)+",
    r"([a-zA-Z]+\s*)+",
)

_BRACE_QUANTIFIER_RE = re.compile(r"\{(\d*)(,?)(\d*)\}")
_NAMED_GROUP_PREFIX_RE = re.compile(r"^\?(?:P?<[A-Za-z_][A-Za-z0-9_]*>|:|>)")


def _skip_class(pattern: str, i: int) -> int:
    """Index just past the character class opening at ``pattern[i] == '['``."""
    i += 1
    if i < len(pattern) and pattern[i] == "^":
        i += 1
    if i < len(pattern) and pattern[i] == "]":
        i += 1
    while i < len(pattern) and pattern[i] != "]":
        i += 2 if pattern[i] == "\\" else 1
    return i + 1


def _repeat_length(pattern: str, i: int) -> int:
    """Length of the repeating quantifier at ``i``, or 0 when there is none.

    ``?`` and ``{0,1}``-style bounds do not repeat and are not counted.
    """
    if i >= len(pattern):
        return 0
    char = pattern[i]
    if char in "+*":
        return 1
    if char != "{":
        return 0
    match = _BRACE_QUANTIFIER_RE.match(pattern, i)
    if match is None:
        return 0
    low, comma, high = match.groups()
    if not low and not high:
        return 0
    if comma and not high:
        return len(match.group(0))
    upper = int(high) if comma else int(low)
    return len(match.group(0)) if upper > 1 else 0


def _top_level_branches(body: str) -> list[str]:
    branches: list[str] = []
    depth = 0
    start = 0
    i = 0
    while i < len(body):
        char = body[i]
        if char == "\\":
            i += 2
            continue
        if char == "[":
            i = _skip_class(body, i)
            continue
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        elif char == "|" and depth == 0:
            branches.append(body[start:i])
            start = i + 1
        i += 1
    branches.append(body[start:])
    return branches


def _overlapping_branches(body: str) -> bool:
    body = _NAMED_GROUP_PREFIX_RE.sub("", body, count=1)
    branches = _top_level_branches(body)
    if len(branches) < 2:
        return False
    for index, left in enumerate(branches):
        for right in branches[index + 1 :]:
            if left.startswith(right) or right.startswith(left):
                return True
    return False


def find_structural_hazard(pattern: str) -> str | None:
    """Describe the first repeated group that can backtrack exponentially, if any."""
    # Each open group tracks (start index, contains a repeating quantifier).
    stack: list[list] = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "\\":
            i += 2
            continue
        if char == "[":
            i = _skip_class(pattern, i)
            continue
        if char == "(":
            stack.append([i, False])
            i += 1
            continue
        if char == ")" and stack:
            start, has_repeat = stack.pop()
            repeat = _repeat_length(pattern, i + 1)
            if repeat:
                group = pattern[start : i + 1]
                if has_repeat:
                    return f"nested quantifier in {group}{pattern[i + 1 : i + 1 + repeat]}"
                if _overlapping_branches(pattern[start + 1 : i]):
                    return f"overlapping alternation in {group}{pattern[i + 1 : i + 1 + repeat]}"
            if has_repeat and stack:
                stack[-1][1] = True
            i += 1
            continue
        repeat = _repeat_length(pattern, i)
        if repeat:
            for group in stack:
                group[1] = True
            i += repeat
            continue
        i += 1
    return None


def _probe_worker(pattern: str, subject: str, conn) -> None:
    conn.send("ready")
    re.search(pattern, subject)
    conn.send("done")
    conn.close()


class ProbeUnavailableError(RuntimeError):
    """The child process could not deliver a verdict; nothing is known about the pattern."""


def _spawn_probe(pattern: str, timeout_seconds: float) -> bool:
    ctx = multiprocessing.get_context()
    receiver, sender = ctx.Pipe(duplex=False)
    process = ctx.Process(target=_probe_worker, args=(pattern, PROBE_INPUT, sender), daemon=True)
    process.start()
    sender.close()
    try:
        if not receiver.poll(PROBE_START_TIMEOUT_SECONDS):
            raise ProbeUnavailableError("probe process did not start in time")
        receiver.recv()
        if not receiver.poll(timeout_seconds):
            return False
        return receiver.recv() == "done"
    except EOFError as exc:
        raise ProbeUnavailableError("probe process exited without a verdict") from exc
    finally:
        receiver.close()
        if process.is_alive():
            process.terminate()
        process.join(1.0)


@lru_cache(maxsize=512)
def _cached_verdict(pattern: str, timeout_seconds: float) -> bool:
    # lru_cache does not store raised exceptions, so only real verdicts are kept.
    return _spawn_probe(pattern, timeout_seconds)


def probe_finishes_in_time(pattern: str, timeout_seconds: float = PROBE_TIMEOUT_SECONDS) -> bool:
    """Run ``pattern`` against the probe input in a child process.

    The regex engine cannot be interrupted from another thread, so the search
    runs in a process that is terminated once the deadline passes. The
    deadline starts after the child reports it is ready. A child that never
    reports rejects the pattern for this call only.
    """
    try:
        return _cached_verdict(pattern, timeout_seconds)
    except ProbeUnavailableError as exc:
        logger.warning("[rewrite.safety] %s for pattern=%r", exc, pattern)
        return False


@dataclass(slots=True)
class PatternSafetyChecker:
    """Heuristic screen for rewrite and lore patterns.

    Passing the check does not prove a pattern is linear; it only rejects the
    shapes and probe timings known to backtrack catastrophically.
    """

    max_length: int = MAX_PATTERN_LENGTH
    probe_timeout_seconds: float = PROBE_TIMEOUT_SECONDS
    run_probe: bool = True

    def validate(self, pattern: str) -> None:
        if not pattern or not pattern.strip():
            raise RewritePatternError("pattern cannot be empty")
        if len(pattern) > self.max_length:
            raise RewritePatternError(f"pattern too long (max {self.max_length} characters)")
        try:
            re.compile(pattern)
        except re.error as exc:
            raise RewritePatternError(f"invalid regex: {exc}") from exc

        for shape in KNOWN_CATASTROPHIC_SHAPES:
            if shape in pattern:
                raise RewritePatternError(f"potentially dangerous pattern detected: {shape}")

        hazard = find_structural_hazard(pattern)
        if hazard:
            raise RewritePatternError(f"potentially dangerous pattern detected: {hazard}")

        if self.run_probe and not probe_finishes_in_time(pattern, self.probe_timeout_seconds):
            raise RewritePatternError(
                f"pattern execution timeout (>{int(self.probe_timeout_seconds * 1000)}ms on probe input)"
            )

    def is_safe(self, pattern: str) -> bool:
        try:
            self.validate(pattern)
        except RewritePatternError:
            return False
        return True
