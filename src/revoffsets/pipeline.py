"""End-to-end offset resolution for one image."""

from __future__ import annotations

import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable

from revoffsets.catalog.loader import build_rules
from revoffsets.catalog.models import Catalog, StructureSpec
from revoffsets.config.models import OffsetsConfig
from revoffsets.errors import ImageReadError, PipelineCancelled
from revoffsets.image.accessor import BinaryImage
from revoffsets.resolution.evidence import Weights
from revoffsets.resolution.resolver import resolve, resolve_structure
from revoffsets.scanning.scanner import ScanResult, group_by_target, relocate, scan_regions
from revoffsets.snapshot.models import OffsetRecord, OffsetSnapshot, StructureOffset, TargetInfo
from revoffsets.snapshot.store import build_snapshot
from revoffsets.structures.inference import infer_structure
from revoffsets.symbols.demangle import Demangler
from revoffsets.symbols.reader import SymbolTable, load_symbols
from revoffsets.utils.logging import bound_run, get_logger
from revoffsets.xrefs.entries import EntryLocator, caller_entries
from revoffsets.xrefs.graph import XrefGraph, build_xrefs

log = get_logger(__name__)

STAGES = ("symbols", "scan", "xrefs", "structures", "resolve", "snapshot")


@dataclass
class PipelineResult:
    snapshot: OffsetSnapshot
    issues: list[Exception] = field(default_factory=list)
    symbols: SymbolTable | None = None
    scan: ScanResult | None = None
    xrefs: XrefGraph | None = None


class OffsetPipeline:
    """Runs symbols, scanning, xrefs, structure inference and resolution.

    ``cancel`` may be set from any thread; running stages notice it between
    chunks and the run ends with PipelineCancelled instead of a snapshot.
    """

    def __init__(
        self,
        config: OffsetsConfig,
        catalog: Catalog,
        *,
        demangler: Demangler | None = None,
        cancel: threading.Event | None = None,
        on_stage: Callable[[str], None] | None = None,
    ) -> None:
        self.config = config
        self.catalog = catalog
        self.demangler = demangler
        self.cancel = cancel or threading.Event()
        self._on_stage = on_stage
        self.weights = Weights.from_config(config.resolver)

    def _stage(self, name: str) -> None:
        if self.cancel.is_set():
            raise PipelineCancelled(f"cancelled before {name}")
        log.debug("stage_started", stage=name)
        if self._on_stage is not None:
            self._on_stage(name)

    def run(self, image: BinaryImage) -> PipelineResult:
        try:
            with bound_run(image=image.name):
                return self._run(image)
        except KeyboardInterrupt:
            self.cancel.set()
            raise PipelineCancelled("interrupted") from None

    def _run(self, image: BinaryImage) -> PipelineResult:
        cfg = self.config
        issues: list[Exception] = []

        self._stage("symbols")
        table = SymbolTable(load_symbols(image, self.demangler))

        self._stage("scan")
        rules = build_rules(self.catalog)
        scan = scan_regions(
            image,
            image.code_regions(),
            rules,
            workers=cfg.scanner.workers,
            chunk_size=cfg.scanner.chunk_size,
            skip_search=cfg.scanner.use_skip_search,
            cancel=self.cancel,
        )
        issues.extend(scan.errors.values())
        locator = EntryLocator(
            image,
            table.function_addresses(),
            complete=bool(image.function_starts()),
            max_walk=cfg.scanner.entry_walk,
        )
        scan = relocate(scan, locator.entry_for)

        candidates = self._candidates(table, scan)

        self._stage("xrefs")
        all_candidates = {a for addrs in candidates.values() for a in addrs}
        xrefs = build_xrefs(
            image,
            all_candidates,
            function_starts=table.function_addresses(),
            chunk_size=cfg.xrefs.chunk_size,
            cancel=self.cancel,
            errors=issues,
        )

        self._stage("structures")
        observations = self._infer_structures(image, candidates, issues)

        self._stage("resolve")
        records = [
            resolve(target, scan.matches, table, xrefs, observations, self.weights, issues=issues)
            for target in self.catalog.targets
        ]
        records = self._resolve_from_callers(image, locator, xrefs, records, scan, table, observations, issues)
        winners = {r.name: r.address for r in records}
        offsets: list[StructureOffset] = []
        for spec in self.catalog.structures:
            offsets.extend(
                resolve_structure(
                    spec,
                    observations,
                    winners,
                    base_confidence=cfg.structures.base_confidence,
                    full_support_anchors=cfg.structures.full_support_anchors,
                )
            )

        self._stage("snapshot")
        snapshot = build_snapshot(
            records,
            offsets,
            cfg.output.schema_version,
            target=TargetInfo(image.name, image.identity, image.architecture, image.base_address),
        )
        stats = snapshot.statistics
        log.info(
            "pipeline_complete",
            resolved=stats.resolved,
            unresolved=stats.unresolved,
            mean_confidence=round(stats.mean_confidence, 3),
            issues=len(issues),
        )
        return PipelineResult(snapshot, issues, table, scan, xrefs)

    def _resolve_from_callers(
        self,
        image: BinaryImage,
        locator: EntryLocator,
        xrefs: XrefGraph,
        records: list[OffsetRecord],
        scan: ScanResult,
        table: SymbolTable,
        observations: dict[str, dict[int, frozenset[StructureOffset]]],
        issues: list[Exception],
    ) -> list[OffsetRecord]:
        """Second pass for targets with no candidates and a resolved ``caller_of`` target."""
        resolved = {r.name: r.address for r in records}
        taken = {a for a in resolved.values() if a is not None}
        out = []
        for target, record in zip(self.catalog.targets, records):
            anchor = resolved.get(target.caller_of) if target.caller_of else None
            if record.candidates or anchor is None:
                out.append(record)
                continue
            callers = caller_entries(image, xrefs, anchor, locator.entry_for, exclude=taken)
            log.debug("caller_candidates", target=target.name, anchor=target.caller_of, count=len(callers))
            if callers:
                record = resolve(
                    target, scan.matches, table, xrefs, observations, self.weights, issues=issues, callers=callers
                )
                if record.address is not None:
                    taken.add(record.address)
            out.append(record)
        return out

    def _candidates(self, table: SymbolTable, scan: ScanResult) -> dict[str, set[int]]:
        by_target = group_by_target(scan)
        candidates: dict[str, set[int]] = {}
        for target in self.catalog.targets:
            found = set(table.addresses_for(target.symbol_names()))
            found.update(hit.address for hit in by_target.get(target.name, ()))
            candidates[target.name] = found
        log.debug("candidates_collected", total=sum(len(c) for c in candidates.values()))
        return candidates

    def _infer_structures(
        self,
        image: BinaryImage,
        candidates: dict[str, set[int]],
        issues: list[Exception],
    ) -> dict[str, dict[int, frozenset[StructureOffset]]]:
        units: list[tuple[StructureSpec, str, int]] = [
            (spec, anchor, address)
            for spec in self.catalog.structures
            for anchor in spec.anchor_targets()
            for address in sorted(candidates.get(anchor, ()))
        ]
        found: dict[str, dict[int, set[StructureOffset]]] = defaultdict(lambda: defaultdict(set))
        if not units:
            return {}

        window = self.config.structures.window_instructions

        def unit(spec: StructureSpec, anchor: str, address: int) -> frozenset[StructureOffset]:
            if self.cancel.is_set():
                raise PipelineCancelled("structure inference cancelled")
            return infer_structure(image, address, spec, anchor=anchor, window=window)

        with ThreadPoolExecutor(max_workers=self.config.structures.workers, thread_name_prefix="infer") as pool:
            futures = [((anchor, address), pool.submit(unit, spec, anchor, address)) for spec, anchor, address in units]
            try:
                for (anchor, address), future in futures:
                    try:
                        found[anchor][address].update(future.result())
                    except ImageReadError as exc:
                        log.warning("structure_unit_failed", anchor=anchor, address=hex(address), error=str(exc))
                        issues.append(exc)
            except BaseException:
                self.cancel.set()
                for _, future in futures:
                    future.cancel()
                raise

        return {
            anchor: {address: frozenset(obs) for address, obs in by_address.items()}
            for anchor, by_address in found.items()
        }


def generate(
    image: BinaryImage,
    config: OffsetsConfig,
    catalog: Catalog,
    *,
    demangler: Demangler | None = None,
) -> PipelineResult:
    return OffsetPipeline(config, catalog, demangler=demangler).run(image)
