"""Concurrent pattern scanning over image regions."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Callable, Iterable, Mapping, Sequence

from revoffsets.config.defaults import DEFAULT_CHUNK_SIZE, DEFAULT_WORKERS
from revoffsets.errors import ImageReadError, PipelineCancelled
from revoffsets.image.accessor import BinaryImage, Region
from revoffsets.scanning.pattern import PatternRule
from revoffsets.utils.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True, order=True)
class MatchCandidate:
    address: int
    rule_id: str
    target: str = field(compare=False)
    score: float = field(compare=False)


@dataclass
class ScanResult:
    """Per-rule matches plus the read errors of units that contributed nothing."""

    matches: dict[str, tuple[MatchCandidate, ...]]
    errors: dict[str, ImageReadError] = field(default_factory=dict)

    def for_target(self, target: str) -> list[MatchCandidate]:
        found = [m for hits in self.matches.values() for m in hits if m.target == target]
        return sorted(found)

    def total(self) -> int:
        return sum(len(hits) for hits in self.matches.values())


def _check(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise PipelineCancelled("scan cancelled")


def scan_rule(
    image: BinaryImage,
    region: Region,
    rule: PatternRule,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    skip_search: bool = True,
    cancel: threading.Event | None = None,
) -> tuple[MatchCandidate, ...]:
    """Find every start address of ``rule`` inside ``region``, ascending."""
    effective: Region | None = region
    if rule.region is not None:
        allowed = image.resolve_region(rule.region)
        effective = region.intersect(allowed) if allowed else None
    if effective is None or effective.size < rule.length:
        return ()

    data = image.read_bytes(effective.start, effective.size)
    compiled = rule.compile()
    score = rule.specificity
    hits: list[MatchCandidate] = []

    for lo in range(0, effective.size, chunk_size):
        _check(cancel)
        for offset in compiled.finditer(
            data,
            lo,
            lo + chunk_size,
            base=effective.start,
            alignment=rule.alignment,
            skip_search=skip_search,
        ):
            hits.append(MatchCandidate(effective.start + offset, rule.rule_id, rule.target, score))
    return tuple(hits)


def scan(
    image: BinaryImage,
    region: Region,
    rules: Sequence[PatternRule],
    *,
    workers: int = DEFAULT_WORKERS,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    skip_search: bool = True,
    cancel: threading.Event | None = None,
) -> ScanResult:
    """Scan ``region`` for every rule, one unit of work per rule.

    A unit whose read fails reports an empty match set and its error; the
    other units are unaffected. Cancellation raises ``PipelineCancelled``.
    """
    matches: dict[str, tuple[MatchCandidate, ...]] = {r.rule_id: () for r in rules}
    errors: dict[str, ImageReadError] = {}
    if not rules:
        return ScanResult(matches, errors)

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="scan") as pool:
        futures = {
            rule.rule_id: pool.submit(
                scan_rule,
                image,
                region,
                rule,
                chunk_size=chunk_size,
                skip_search=skip_search,
                cancel=cancel,
            )
            for rule in rules
        }
        try:
            for rule_id, future in futures.items():
                try:
                    matches[rule_id] = future.result()
                except ImageReadError as exc:
                    log.warning("scan_unit_failed", rule=rule_id, region=region.name, error=str(exc))
                    errors[rule_id] = exc
        except BaseException:
            if cancel is not None:
                cancel.set()
            for future in futures.values():
                future.cancel()
            raise

    log.debug(
        "region_scanned",
        region=region.name or hex(region.start),
        rules=len(rules),
        matches=sum(len(m) for m in matches.values()),
    )
    return ScanResult(matches, errors)


def scan_regions(
    image: BinaryImage,
    regions: Iterable[Region],
    rules: Sequence[PatternRule],
    **kwargs: object,
) -> ScanResult:
    """Scan several regions and merge results per rule (ascending, de-duplicated)."""
    merged: dict[str, set[MatchCandidate]] = {r.rule_id: set() for r in rules}
    errors: dict[str, ImageReadError] = {}
    for region in regions:
        result = scan(image, region, rules, **kwargs)  # type: ignore[arg-type]
        for rule_id, hits in result.matches.items():
            merged[rule_id].update(hits)
        errors.update(result.errors)
    return ScanResult({k: tuple(sorted(v)) for k, v in merged.items()}, errors)


def group_by_target(result: ScanResult) -> Mapping[str, list[MatchCandidate]]:
    grouped: dict[str, list[MatchCandidate]] = {}
    for hits in result.matches.values():
        for hit in hits:
            grouped.setdefault(hit.target, []).append(hit)
    return {k: sorted(v) for k, v in grouped.items()}


def relocate(result: ScanResult, entry_of: Callable[[int], int]) -> ScanResult:
    """Move every hit to ``entry_of(hit.address)``.

    Hits of one rule that land on the same entry collapse into one.
    """
    matches: dict[str, tuple[MatchCandidate, ...]] = {}
    moved = 0
    for rule_id, hits in result.matches.items():
        relocated = set()
        for hit in hits:
            entry = entry_of(hit.address)
            moved += entry != hit.address
            relocated.add(replace(hit, address=entry))
        matches[rule_id] = tuple(sorted(relocated))
    if moved:
        log.debug("hits_relocated", moved=moved)
    return ScanResult(matches, dict(result.errors))
