"""Line-granularity diff and fuzzy patch application.

Lines are interned to integer symbols so the matcher compares small hashable tokens,
the symbol sequences are diffed with SequenceMatcher (longest matching blocks), and the
opcodes are grouped back into hunks in original-line units with a fixed context margin.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import difflib
from typing import Literal


CONTEXT_LINES = 3
FUZZY_RADIUS = 50

PatchMethod = Literal["diff", "rewrite"]


@dataclass(frozen=True)
class Hunk:
    position: int  # 0-based index of the first context line in the original
    context_before: list[str]
    removed: list[str]
    inserted: list[str]
    context_after: list[str]

    @property
    def old_block(self) -> list[str]:
        return [*self.context_before, *self.removed, *self.context_after]

    @property
    def new_block(self) -> list[str]:
        return [*self.context_before, *self.inserted, *self.context_after]


@dataclass
class Patch:
    hunks: list[Hunk] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.hunks)


@dataclass(frozen=True)
class PatchResult:
    method: PatchMethod
    content: str
    hunks: int
    applied: list[bool]


def split_lines(text: str) -> list[str]:
    # Line endings stay attached so joining the pieces reproduces the text exactly.
    return str(text or "").splitlines(keepends=True)


def _lines_to_symbols(a: list[str], b: list[str]) -> tuple[list[int], list[int]]:
    table: dict[str, int] = {}

    def encode(lines: list[str]) -> list[int]:
        out: list[int] = []
        for line in lines:
            sym = table.get(line)
            if sym is None:
                sym = len(table)
                table[line] = sym
            out.append(sym)
        return out

    return encode(a), encode(b)


def make_patch(original: str, target: str, *, context: int = CONTEXT_LINES) -> Patch:
    a = split_lines(original)
    b = split_lines(target)
    sa, sb = _lines_to_symbols(a, b)
    matcher = difflib.SequenceMatcher(None, sa, sb, autojunk=False)

    hunks: list[Hunk] = []
    for group in matcher.get_grouped_opcodes(context):
        first, last = group[0], group[-1]
        before: list[str] = []
        after: list[str] = []
        removed: list[str] = []
        inserted: list[str] = []
        # Interior "equal" runs are folded into removed/inserted so each hunk stays contiguous.
        for idx, (tag, i1, i2, j1, j2) in enumerate(group):
            if tag == "equal":
                if idx == 0:
                    before = a[i1:i2]
                    continue
                if idx == len(group) - 1:
                    after = a[i1:i2]
                    continue
            removed.extend(a[i1:i2])
            inserted.extend(b[j1:j2])
        position = first[1]
        if last[0] == "equal" and len(group) == 1:
            continue
        hunks.append(
            Hunk(
                position=position,
                context_before=list(before),
                removed=removed,
                inserted=inserted,
                context_after=list(after),
            )
        )
    return Patch(hunks=hunks)


def _matches_at(lines: list[str], block: list[str], pos: int) -> bool:
    if pos < 0 or pos + len(block) > len(lines):
        return False
    return lines[pos : pos + len(block)] == block


def _locate(lines: list[str], block: list[str], expected: int, radius: int) -> int | None:
    if _matches_at(lines, block, expected):
        return expected
    for step in range(1, radius + 1):
        for pos in (expected - step, expected + step):
            if _matches_at(lines, block, pos):
                return pos
    return None


def apply_patch(patch: Patch, original: str, *, radius: int = FUZZY_RADIUS) -> tuple[str, list[bool]]:
    lines = split_lines(original)
    results: list[bool] = []
    delta = 0
    for hunk in patch.hunks:
        expected = hunk.position + delta
        old_block = hunk.old_block
        pos = _locate(lines, old_block, expected, radius)
        if pos is not None:
            lines[pos : pos + len(old_block)] = hunk.new_block
        else:
            # Context drifted; retry with the changed lines alone.
            if not hunk.removed:
                results.append(False)
                continue
            core_expected = expected + len(hunk.context_before)
            pos = _locate(lines, hunk.removed, core_expected, radius)
            if pos is None:
                results.append(False)
                continue
            lines[pos : pos + len(hunk.removed)] = hunk.inserted
        delta += len(hunk.inserted) - len(hunk.removed)
        results.append(True)
    return "".join(lines), results


def create_and_apply(original: str, target: str, threshold: int) -> PatchResult:
    """Produce `target` from `original`, patching in place when that is safe.

    Files larger than `threshold` characters are rewritten wholesale without diffing.
    Any patch that yields no hunks for different content, fails a hunk, or does not
    reproduce `target` exactly also falls back to a full rewrite.
    """

    original = str(original or "")
    target = str(target or "")
    if len(target) > threshold or len(original) > threshold:
        return PatchResult(method="rewrite", content=target, hunks=0, applied=[])

    patch = make_patch(original, target)
    if not patch.hunks:
        if original != target:
            return PatchResult(method="rewrite", content=target, hunks=0, applied=[])
        return PatchResult(method="diff", content=original, hunks=0, applied=[])

    content, applied = apply_patch(patch, original)
    if not all(applied) or content != target:
        return PatchResult(method="rewrite", content=target, hunks=len(patch), applied=applied)
    return PatchResult(method="diff", content=content, hunks=len(patch), applied=applied)
