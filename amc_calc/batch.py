"""Batch processing of product records.

Large uploads are split into fixed-size chunks. Every chunk is processed
sequentially by :func:`run_chunk`, which reports progress and a completion
message through a callback; :func:`process_all` dispatches chunks to a thread
pool and merges the chunk results once all of them have finished. A record
that fails is recorded as an error result and never stops the rest of the
batch.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

from .data_models import BatchSummary, EngineConfig, ProductRecord, ProductSchedule, ScheduleKind
from .errors import AmcCalcError, InvalidInput
from .products import calculate_product

logger = logging.getLogger(__name__)

RecordLike = Union[ProductRecord, Mapping[str, Any]]


@dataclass(frozen=True)
class ChunkRequest:
    """One unit of work: a slice of the batch plus everything needed to run it."""

    records: Tuple[RecordLike, ...]
    config: EngineConfig
    kind: ScheduleKind
    chunk_index: int
    total_chunks: int
    offset: int = 0


@dataclass(frozen=True)
class ProgressMessage:
    chunk_index: int
    processed: int
    total: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "progress",
            "chunk_index": self.chunk_index,
            "processed": self.processed,
            "total": self.total,
        }


@dataclass(frozen=True)
class ChunkComplete:
    chunk_index: int
    total_chunks: int
    results: Tuple[ProductSchedule, ...]
    summary: BatchSummary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "chunkComplete",
            "chunk_index": self.chunk_index,
            "total_chunks": self.total_chunks,
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary.to_dict(),
        }


Message = Union[ProgressMessage, ChunkComplete]
MessageHandler = Callable[[Message], None]


@dataclass
class BatchResult:
    """Merged outcome of a batch run, results in input order."""

    results: List[ProductSchedule] = field(default_factory=list)
    summary: BatchSummary = field(default_factory=BatchSummary)
    total_chunks: int = 0
    chunks_completed: int = 0
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary.to_dict(),
            "total_chunks": self.total_chunks,
            "chunks_completed": self.chunks_completed,
            "cancelled": self.cancelled,
        }


def _identity(item: RecordLike, position: int) -> Tuple[str, str, str]:
    if isinstance(item, ProductRecord):
        return item.record_id, item.product_name, item.location
    if isinstance(item, Mapping):
        return (
            str(item.get("record_id") or position),
            str(item.get("product_name") or "Unknown Product"),
            str(item.get("location") or ""),
        )
    return str(position), "Unknown Product", ""


def process_record(
    item: RecordLike, position: int, kind: ScheduleKind, config: EngineConfig
) -> ProductSchedule:
    """Compute one record, turning its failure into an error result.

    Besides :class:`AmcCalcError`, arithmetic and value errors raised while
    computing a single record are confined to that record.
    """
    try:
        if isinstance(item, ProductRecord):
            record = item
        elif isinstance(item, Mapping):
            record = ProductRecord.from_dict(item, default_id=str(position))
        else:
            raise InvalidInput("record", f"Unsupported record type: {type(item).__name__}")
        return calculate_product(record, kind, config)
    except (AmcCalcError, ArithmeticError, ValueError) as exc:
        record_id, name, location = _identity(item, position)
        if isinstance(exc, AmcCalcError):
            logger.warning("Record %s (%s) failed: %s", record_id, name, exc)
        else:
            logger.exception("Record %s (%s) failed unexpectedly", record_id, name)
        return ProductSchedule(
            record_id=record_id,
            product_name=name,
            kind=kind,
            location=location,
            error=str(exc),
            error_field=getattr(exc, "field", None),
        )


def run_chunk(request: ChunkRequest, emit: Optional[MessageHandler] = None) -> ChunkComplete:
    """Process one chunk sequentially.

    Emits a :class:`ProgressMessage` every ``progress_interval`` records and
    after the last one, then a :class:`ChunkComplete`.
    """
    results: List[ProductSchedule] = []
    summary = BatchSummary()
    total = len(request.records)
    interval = request.config.progress_interval
    for i, item in enumerate(request.records):
        outcome = process_record(item, request.offset + i, request.kind, request.config)
        results.append(outcome)
        summary.add(outcome)
        processed = i + 1
        if emit is not None and (processed % interval == 0 or processed == total):
            emit(ProgressMessage(chunk_index=request.chunk_index, processed=processed, total=total))
    complete = ChunkComplete(
        chunk_index=request.chunk_index,
        total_chunks=request.total_chunks,
        results=tuple(results),
        summary=summary,
    )
    if emit is not None:
        emit(complete)
    return complete


def process_all(
    records: Sequence[RecordLike],
    config: Optional[EngineConfig] = None,
    *,
    kind: ScheduleKind = ScheduleKind.AMC,
    chunk_size: Optional[int] = None,
    max_workers: int = 1,
    on_message: Optional[MessageHandler] = None,
    cancel_event: Optional[threading.Event] = None,
) -> BatchResult:
    """Compute schedules for all records.

    Chunks are dispatched to a thread pool with at most ``max_workers`` in
    flight. Once ``cancel_event`` is set no further chunks are dispatched;
    chunks already running finish and their results are kept. Messages are
    delivered to ``on_message`` one at a time, possibly from worker threads.
    """
    config = config or EngineConfig()
    size = chunk_size or config.chunk_size
    if size < 1:
        raise InvalidInput("chunk_size", f"chunk_size must be positive; got {size}")
    if max_workers < 1:
        raise InvalidInput("max_workers", f"max_workers must be positive; got {max_workers}")
    items = list(records)
    chunks = [items[i : i + size] for i in range(0, len(items), size)]
    batch = BatchResult(total_chunks=len(chunks))
    logger.info("Processing %d %s records in %d chunks", len(items), kind.value, len(chunks))

    lock = threading.Lock()

    def emit(message: Message) -> None:
        if on_message is None:
            return
        with lock:
            on_message(message)

    pending: Deque[Tuple[int, List[RecordLike]]] = deque(enumerate(chunks))
    in_flight: Set[Future] = set()
    completed: Dict[int, ChunkComplete] = {}
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        while pending or in_flight:
            while pending and len(in_flight) < max_workers:
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("Batch cancelled with %d chunks not dispatched", len(pending))
                    batch.cancelled = True
                    pending.clear()
                    break
                index, chunk = pending.popleft()
                request = ChunkRequest(
                    records=tuple(chunk),
                    config=config,
                    kind=kind,
                    chunk_index=index,
                    total_chunks=len(chunks),
                    offset=index * size,
                )
                in_flight.add(executor.submit(run_chunk, request, emit))
            if not in_flight:
                break
            done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
            for future in done:
                chunk_result = future.result()
                completed[chunk_result.chunk_index] = chunk_result

    for index in sorted(completed):
        batch.results.extend(completed[index].results)
        batch.summary.merge(completed[index].summary)
    batch.chunks_completed = len(completed)
    logger.info(
        "Batch finished: %d processed, %d successful, %d errors",
        batch.summary.processed,
        batch.summary.successful,
        batch.summary.errors,
    )
    return batch
