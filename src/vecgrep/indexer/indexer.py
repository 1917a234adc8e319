"""Main indexer that keeps the vector index in sync with the filesystem."""

import errno
import logging
import os
import queue
import threading
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from vecgrep.indexer.database import IndexStore
from vecgrep.indexer.embeddings import (
    DEFAULT_BACKOFF,
    DEFAULT_BATCH_SIZE,
    DEFAULT_MAX_RETRIES,
    BatchEmbedder,
    EmbeddingEngine,
    call_with_retry,
)
from vecgrep.indexer.errors import ScopeNotFoundError, VecgrepError
from vecgrep.indexer.harvester import Harvester
from vecgrep.indexer.models import (
    FileBundle,
    HarvestedChunk,
    IndexedFile,
    IndexReport,
    IndexStatus,
)
from vecgrep.indexer.walker import FileInfo, compute_hash, walk_roots

logger = logging.getLogger(__name__)

# Seconds the embedding stage waits for more files before embedding a short batch
DEFAULT_FLUSH_INTERVAL = 0.5

# Read errors worth retrying; anything else (missing file, permissions) fails at once
TRANSIENT_ERRNOS = frozenset({errno.EAGAIN, errno.EBUSY, errno.EINTR, errno.EIO, errno.ETIMEDOUT})

# Queue message kinds
_HARVESTED = "harvested"  # worker -> embedding stage
_WRITE = "write"  # -> writer
_TOUCH = "touch"
_FAIL = "fail"
_STOP = "stop"


def default_workers() -> int:
    return min(32, os.cpu_count() or 1)


def resolve_roots(roots: Iterable[Path | str]) -> list[Path]:
    """
    Resolve roots to absolute paths.

    Raises:
        ScopeNotFoundError: A root does not exist.
    """
    resolved: list[Path] = []
    for root in roots:
        path = Path(root).expanduser().resolve()
        if not path.exists():
            raise ScopeNotFoundError(f"Path does not exist: {root}")
        if path not in resolved:
            resolved.append(path)
    return resolved


def _is_transient_read(error: Exception) -> bool:
    return isinstance(error, OSError) and error.errno in TRANSIENT_ERRNOS


@dataclass(eq=False)
class _PendingFile:
    """A harvested file waiting in the embedding stage for its vectors."""

    file: IndexedFile
    chunks: list[HarvestedChunk]
    is_new: bool
    vectors: list = field(default_factory=list)

    @property
    def remaining(self) -> int:
        return len(self.chunks) - len(self.vectors)

    def bundle(self, engine: EmbeddingEngine) -> FileBundle:
        return FileBundle(
            file=self.file,
            chunks=self.chunks,
            vectors=self.vectors,
            engine=engine.descriptor,
        )


class Indexer:
    """
    Indexer that syncs files under a set of roots with the vector index.

    The filesystem is always the source of truth. The index is derived and
    can be regenerated at any time.

    Pipeline:
        Enumeration runs sequentially in the calling thread and applies the
        (size, mtime) pre-filter. Remaining files go to a thread pool that
        reads, hashes and harvests them. Harvested chunks from many files
        collect in a single embedding stage, which calls the engine with
        batches of up to batch_size texts and routes each vector back to its
        file. Finished files travel over a bounded queue to a single writer
        thread, which commits one file per transaction. Only the writer
        touches the database for writes.
    """

    def __init__(
        self,
        store: IndexStore,
        engine: EmbeddingEngine,
        harvester: Harvester | None = None,
        workers: int | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff: float = DEFAULT_BACKOFF,
        exclude: Iterable[str] = (),
        max_file_size: int | None = None,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
    ):
        """
        Initialize the indexer.

        Args:
            store: Initialized index store
            engine: Embedding engine used for every chunk
            harvester: Chunk harvester (default settings if omitted)
            workers: Worker threads (default min(32, cpu count))
            batch_size: Texts per embedding call, gathered across files
            max_retries: Retries for transient embedding and read failures
            backoff: Initial retry delay in seconds
            exclude: Extra gitignore-style patterns to skip
            max_file_size: Files larger than this many bytes are skipped
            flush_interval: Idle seconds before a partial batch is embedded
        """
        self.store = store
        self.engine = engine
        self.harvester = harvester or Harvester()
        self.workers = workers or default_workers()
        if self.workers <= 0:
            raise ValueError(f"workers must be positive, got {self.workers}")
        self.embedder = BatchEmbedder(engine, batch_size, max_retries, backoff)
        self.max_retries = max_retries
        self.backoff = backoff
        self.exclude = list(exclude)
        self.max_file_size = max_file_size
        self.flush_interval = flush_interval

    def index(
        self,
        roots: Iterable[Path | str],
        force: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> IndexReport:
        """
        Bring the index in line with the files under the given roots.

        Args:
            roots: Directories or files to index
            force: Re-harvest and re-embed even if content is unchanged
            cancel_event: When set, stop scheduling new files

        Returns:
            IndexReport with per-category counts and per-file failures.

        Raises:
            ScopeNotFoundError: A root does not exist.
            EngineMismatchError: The engine conflicts with the index.
        """
        resolved = resolve_roots(roots)
        self.store.register_engine(self.engine.descriptor)
        cancel_event = cancel_event or threading.Event()

        report = IndexReport()
        seen: set[str] = set()
        harvested: queue.Queue = queue.Queue(maxsize=self.workers * 2)
        results: queue.Queue = queue.Queue(maxsize=self.workers * 2)
        slots = threading.BoundedSemaphore(self.workers * 2)

        logger.info("Indexing %s", ", ".join(str(r) for r in resolved))
        writer = threading.Thread(
            target=self._write_loop,
            args=(results, report),
            name="vecgrep-writer",
            daemon=True,
        )
        embedder = threading.Thread(
            target=self._embed_loop,
            args=(harvested, results),
            name="vecgrep-embedder",
            daemon=True,
        )
        writer.start()
        embedder.start()
        try:
            with ThreadPoolExecutor(
                max_workers=self.workers, thread_name_prefix="vecgrep-worker"
            ) as pool:
                for info in walk_roots(resolved, self.exclude, self.max_file_size):
                    if cancel_event.is_set():
                        report.cancelled = True
                        break
                    path = str(info.path)
                    if path in seen:
                        continue
                    seen.add(path)

                    stored = self.store.get_file(path)
                    if (
                        not force
                        and stored is not None
                        and stored.size == info.size
                        and stored.mtime == info.mtime
                    ):
                        logger.debug("Unchanged: %s", path)
                        report.unchanged += 1
                        continue

                    slots.acquire()
                    future = pool.submit(self._process, info, stored, force, harvested, results)
                    future.add_done_callback(lambda _: slots.release())
        finally:
            # Stages drain in order so every scheduled file is written
            harvested.put((_STOP,))
            embedder.join()
            results.put((_STOP,))
            writer.join()

        if report.cancelled:
            logger.info("Indexing cancelled; deletion sweep skipped")
        else:
            self._sweep(resolved, seen, report)

        logger.info(
            "Index complete: %d added, %d updated, %d unchanged, %d touched, "
            "%d deleted, %d failed",
            report.added,
            report.updated,
            report.unchanged,
            report.touched,
            report.deleted,
            len(report.failed),
        )
        return report

    def index_file(self, path: Path | str, force: bool = False) -> IndexReport:
        """
        Re-index a single file through the same pipeline.

        A file that no longer exists is removed from the index.

        Raises:
            ScopeNotFoundError: The file neither exists nor is indexed.
        """
        resolved = Path(path).expanduser().resolve()
        if not resolved.exists():
            report = IndexReport()
            if self.store.delete_file(str(resolved)):
                report.deleted = 1
                return report
            raise ScopeNotFoundError(f"Path does not exist: {path}")
        return self.index([resolved], force=force)

    def status(self) -> IndexStatus:
        return self.store.status()

    def _process(
        self,
        info: FileInfo,
        stored: IndexedFile | None,
        force: bool,
        harvested: queue.Queue,
        results: queue.Queue,
    ) -> None:
        """Read, hash and harvest one file, then pass it on for embedding."""
        try:
            data = call_with_retry(
                info.read_bytes, self.max_retries, self.backoff, _is_transient_read
            )
            content_hash = compute_hash(data)
            if not force and stored is not None and stored.content_hash == content_hash:
                results.put((_TOUCH, info))
                return

            pending = _PendingFile(
                file=IndexedFile(
                    path=str(info.path),
                    size=info.size,
                    mtime=info.mtime,
                    content_hash=content_hash,
                    file_type=info.file_type,
                ),
                chunks=self.harvester.harvest(info, data),
                is_new=stored is None,
            )
            if pending.chunks:
                harvested.put((_HARVESTED, pending))
            else:
                results.put((_WRITE, pending.bundle(self.engine), pending.is_new))
        except Exception as e:
            self._fail(results, str(info.path), e)

    def _embed_loop(self, harvested: queue.Queue, results: queue.Queue) -> None:
        """Collect harvested files and embed their chunks in cross-file batches.

        A batch is embedded once batch_size texts are waiting, when no file
        has arrived for flush_interval seconds, or at the stop message.
        """
        pending: list[_PendingFile] = []
        while True:
            try:
                message = harvested.get(timeout=self.flush_interval if pending else None)
            except queue.Empty:
                self._drain(pending, results, partial=True)
                continue
            if message[0] == _STOP:
                self._drain(pending, results, partial=True)
                return
            pending.append(message[1])
            self._drain(pending, results, partial=False)

    def _drain(self, pending: list[_PendingFile], results: queue.Queue, partial: bool) -> None:
        batch_size = self.embedder.batch_size
        while pending and (partial or sum(p.remaining for p in pending) >= batch_size):
            self._embed_next_batch(pending, results)

    def _embed_next_batch(self, pending: list[_PendingFile], results: queue.Queue) -> None:
        """Embed up to batch_size waiting texts and hand finished files to the writer."""
        slices: list[tuple[_PendingFile, list[str]]] = []
        room = self.embedder.batch_size
        for item in pending:
            if room == 0:
                break
            done = len(item.vectors)
            texts = [chunk.content for chunk in item.chunks[done : done + room]]
            slices.append((item, texts))
            room -= len(texts)

        failed: list[_PendingFile] = []
        try:
            vectors = self.embedder.embed([text for _, texts in slices for text in texts])
        except Exception as e:
            if len(slices) == 1:
                self._fail(results, slices[0][0].file.path, e)
                failed.append(slices[0][0])
            else:
                # Find the file at fault by embedding each one alone
                logger.warning(
                    "Batch across %d files failed, retrying per file: %s", len(slices), e
                )
                for item, texts in slices:
                    try:
                        item.vectors.extend(self.embedder.embed(texts))
                    except Exception as file_error:
                        self._fail(results, item.file.path, file_error)
                        failed.append(item)
        else:
            position = 0
            for item, texts in slices:
                item.vectors.extend(vectors[position : position + len(texts)])
                position += len(texts)

        for item, _ in slices:
            if item in failed:
                pending.remove(item)
            elif item.remaining == 0:
                pending.remove(item)
                results.put((_WRITE, item.bundle(self.engine), item.is_new))

    @staticmethod
    def _fail(results: queue.Queue, path: str, error: Exception) -> None:
        """Report a per-file failure; must be called from an except block."""
        if isinstance(error, (OSError, VecgrepError)):
            logger.warning("Skipping %s: %s", path, error)
            results.put((_FAIL, path, str(error)))
        else:
            logger.exception("Unexpected error indexing %s", path)
            results.put((_FAIL, path, f"{type(error).__name__}: {error}"))

    def _write_loop(self, results: queue.Queue, report: IndexReport) -> None:
        """Apply results one at a time until the stop message."""
        try:
            while True:
                message = results.get()
                kind = message[0]
                if kind == _STOP:
                    return
                try:
                    if kind == _TOUCH:
                        info = message[1]
                        self.store.touch_file(str(info.path), info.size, info.mtime)
                        report.touched += 1
                    elif kind == _WRITE:
                        bundle, is_new = message[1], message[2]
                        self.store.write_file(bundle)
                        if is_new:
                            report.added += 1
                        else:
                            report.updated += 1
                        logger.debug(
                            "Indexed %s (%d chunks)", bundle.file.path, len(bundle.chunks)
                        )
                    elif kind == _FAIL:
                        report.failed.append((message[1], message[2]))
                except VecgrepError as e:
                    logger.warning("Write failed: %s", e)
                    report.failed.append((self._message_path(message), str(e)))
                except Exception as e:
                    logger.exception("Unexpected error writing %s", self._message_path(message))
                    report.failed.append((self._message_path(message), f"{type(e).__name__}: {e}"))
        finally:
            self.store.close_thread_connection()

    @staticmethod
    def _message_path(message: tuple) -> str:
        if message[0] == _TOUCH:
            return str(message[1].path)
        return message[1].file.path

    def _sweep(self, roots: list[Path], seen: set[str], report: IndexReport) -> None:
        """Delete stored files under the scanned roots that were not seen."""
        for root in roots:
            for path in sorted(self.store.indexed_paths(str(root))):
                if path not in seen and self.store.delete_file(path):
                    logger.debug("Deleted: %s", path)
                    report.deleted += 1
