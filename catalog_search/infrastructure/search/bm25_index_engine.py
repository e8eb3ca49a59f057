"""
BM25-based, in-process implementation of the IndexEngine port.

Each text field gets its own BM25 index so per-field boosts can be applied the
way a search server does it ("best fields": a document scores the best
boosted field score among the queried fields). Query terms are OR-ed; every
term may also match vocabulary entries within an edit-distance budget
(fuzziness), weighted by their similarity so fuzzy matches rank below the
exact term.

BM25Plus is used instead of BM25Okapi: Okapi's idf turns zero or negative
for terms that occur in half the documents or more, which on small catalogs
would hide perfectly good matches.
"""

import logging
import pickle
import re
import threading
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple

import numpy as np
from rank_bm25 import BM25Plus
from rapidfuzz import process
from rapidfuzz.distance import Levenshtein

from catalog_search.domain.entities import IndexDocument, SearchHit
from catalog_search.domain.ports import IndexEngine
from catalog_search.domain.utils import build_highlights, highlight_terms
from catalog_search.domain.value_objects import (
    EngineResult,
    IndexStats,
    SearchSort,
    StructuredQuery,
)

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1

_TOKEN_PATTERN = re.compile(r"\w+")


def tokenize(text: str) -> List[str]:
    """
    Tokenize text for BM25 indexing and search.

    Lowercases and splits on anything that is not a word character, so
    'sales_report-2024' yields ['sales_report', '2024'] and punctuation never
    sticks to a term.
    """
    return _TOKEN_PATTERN.findall(text.lower())


@dataclass
class _FieldIndex:
    """BM25 model and postings of one document field."""

    bm25: BM25Plus
    postings: Dict[str, Set[int]]

    def mask(self, term: str, size: int) -> np.ndarray:
        mask = np.zeros(size, dtype=bool)
        positions = self.postings.get(term)
        if positions:
            mask[list(positions)] = True
        return mask


class BM25IndexEngine(IndexEngine):
    """
    In-memory index engine backed by rank_bm25.

    This implementation:
    - Keeps IndexDocument projections keyed by id (upserts replace them)
    - Builds one BM25 model per text field lazily, after the first query
      following a write (BM25 models cannot be updated incrementally)
    - Applies filters in-memory after scoring
    - Supports snapshot persistence via pickle (controlled environment only)
    """

    def __init__(self, k1: float = 1.5, b: float = 0.75, delta: float = 1.0) -> None:
        self._k1 = k1
        self._b = b
        self._delta = delta
        self._documents: Dict[str, IndexDocument] = {}
        self._ordered_ids: List[str] = []
        self._fields: Dict[str, Optional[_FieldIndex]] = {}
        self._dirty = True
        self._initialized = False
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Index lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        with self._lock:
            self._initialized = True

    def refresh(self) -> None:
        """Rebuild the field models now instead of on the next query."""
        with self._lock:
            self._dirty = True
            self._ensure_built()

    def optimize(self) -> None:
        with self._lock:
            self._dirty = True
            self._ensure_built()
            for name in ("name", "description", "secondaryText", "searchText"):
                self._field_index(name)
        logger.info(f"BM25 index optimized ({len(self._documents)} documents)")

    def stats(self) -> IndexStats:
        with self._lock:
            size = sum(len(doc.search_text.encode("utf-8")) for doc in self._documents.values())
            return IndexStats(
                exists=self._initialized or bool(self._documents),
                document_count=len(self._documents),
                size_bytes=size,
                health="green",
            )

    def is_healthy(self) -> bool:
        return True

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, document: IndexDocument) -> None:
        """
        Insert or fully replace a document.

        Raises:
            ValueError: If the document has no id
        """
        if not document.id:
            raise ValueError("Cannot index a document without an id")
        with self._lock:
            self._documents[document.id] = document
            self._dirty = True

    def bulk_upsert(self, documents: Sequence[IndexDocument]) -> List[Tuple[str, str]]:
        failed: List[Tuple[str, str]] = []
        with self._lock:
            for document in documents:
                try:
                    self.upsert(document)
                except ValueError as e:
                    failed.append((document.id, str(e)))
        return failed

    def delete(self, doc_id: str) -> bool:
        with self._lock:
            existed = self._documents.pop(doc_id, None) is not None
            if existed:
                self._dirty = True
            return existed

    def get(self, doc_id: str) -> Optional[IndexDocument]:
        with self._lock:
            return self._documents.get(doc_id)

    def count(self) -> int:
        with self._lock:
            return len(self._documents)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def query(self, query: StructuredQuery) -> EngineResult:
        """
        Score, filter, sort and paginate.

        Process:
        1. Tokenize the query text
        2. For each boosted field, sum per-term BM25 scores, each term taking
           its best exact-or-fuzzy expansion, restricted to documents that
           contain the expansion
        3. Keep the best boosted field score per document
        4. Drop non-matching documents and apply filters
        5. Sort, count, and cut the requested window
        """
        tokens = tokenize(query.text)
        if not tokens:
            return EngineResult(hits=(), total=0)

        with self._lock:
            self._ensure_built()
            size = len(self._ordered_ids)
            if size == 0:
                return EngineResult(hits=(), total=0)

            scores = np.zeros(size)
            matched_terms: Set[str] = set()
            for field, boost in query.field_boosts:
                field_index = self._field_index(field)
                if field_index is None:
                    continue
                field_scores = np.zeros(size)
                for token in tokens:
                    best = np.zeros(size)
                    for term, weight in self._expand(token, field_index, query.max_edits(token)):
                        matched_terms.add(term)
                        term_scores = field_index.bm25.get_scores([term]) * weight
                        best = np.maximum(best, np.where(field_index.mask(term, size), term_scores, 0.0))
                    field_scores += best
                scores = np.maximum(scores, field_scores * boost)

            matches = [
                (self._documents[self._ordered_ids[i]], float(scores[i]))
                for i in np.flatnonzero(scores > 0)
            ]

        if not query.filters.is_empty():
            matches = [(doc, score) for doc, score in matches if query.filters.matches(doc)]

        matches.sort(key=self._sort_key(query.sort))
        window = matches[query.offset:query.offset + query.limit]
        hits = tuple(
            SearchHit(
                document=doc,
                score=score,
                rank=query.offset + position,
                highlights=build_highlights(
                    {"name": doc.name, "description": doc.description},
                    lambda text: highlight_terms(text, matched_terms),
                ),
            )
            for position, (doc, score) in enumerate(window, start=1)
        )
        return EngineResult(hits=hits, total=len(matches))

    def field_terms(self, field: str, size: int = 1000) -> Dict[str, int]:
        """Distinct values of a keyword-like field with their document counts."""
        counts: Counter = Counter()
        with self._lock:
            for document in self._documents.values():
                if field == "tags":
                    counts.update(set(document.tags))
                    continue
                value = document.field_text(field).strip()
                if value:
                    counts[value] += 1
        return dict(sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:size])

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_snapshot(self, path: str) -> None:
        """
        Persist the indexed documents to disk using pickle.

        Only documents are saved; field models are rebuilt on load.

        SECURITY WARNING: pickle is only safe in controlled environments.
        Never load snapshot files from untrusted sources.

        Raises:
            IOError: If saving fails
        """
        with self._lock:
            data = {
                "version": SNAPSHOT_VERSION,
                "documents": [doc.to_dict() for doc in self._documents.values()],
            }
        try:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as f:
                pickle.dump(data, f)
        except OSError as e:
            raise IOError(f"Failed to save index snapshot to {path}: {e}") from e

    def load_snapshot(self, path: str) -> int:
        """
        Replace the index contents with a saved snapshot.

        Returns:
            Number of documents loaded

        Raises:
            IOError: If the file cannot be read
            ValueError: If the snapshot format is invalid
        """
        try:
            with open(path, "rb") as f:
                data = pickle.load(f)
        except FileNotFoundError as e:
            raise IOError(f"Index snapshot not found at {path}: {e}") from e
        except pickle.UnpicklingError as e:
            raise ValueError(f"Invalid index snapshot at {path}: {e}") from e
        except OSError as e:
            raise IOError(f"Failed to load index snapshot from {path}: {e}") from e

        if not isinstance(data, dict) or data.get("version") != SNAPSHOT_VERSION:
            raise ValueError(f"Unsupported index snapshot format at {path}")

        documents = [IndexDocument.from_dict(item) for item in data.get("documents", [])]
        with self._lock:
            self._documents = {doc.id: doc for doc in documents}
            self._initialized = True
            self._dirty = True
        logger.info(f"Loaded {len(documents)} documents from index snapshot {path}")
        return len(documents)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_built(self) -> None:
        if not self._dirty:
            return
        self._ordered_ids = sorted(self._documents)
        self._fields = {}
        self._dirty = False

    def _field_index(self, field: str) -> Optional[_FieldIndex]:
        if field in self._fields:
            return self._fields[field]

        corpus = [tokenize(self._documents[i].field_text(field)) for i in self._ordered_ids]
        if not any(corpus):
            # BM25 divides by the average document length
            self._fields[field] = None
            return None

        postings: Dict[str, Set[int]] = {}
        for position, tokens in enumerate(corpus):
            for token in tokens:
                postings.setdefault(token, set()).add(position)

        index = _FieldIndex(
            bm25=BM25Plus(corpus, k1=self._k1, b=self._b, delta=self._delta),
            postings=postings,
        )
        self._fields[field] = index
        return index

    @staticmethod
    def _expand(token: str, field_index: _FieldIndex, max_edits: int) -> Iterator[Tuple[str, float]]:
        """Yield (vocabulary term, weight): the exact term at 1.0, fuzzy neighbours below."""
        if token in field_index.postings:
            yield token, 1.0
        if max_edits <= 0:
            return

        matches = process.extract(
            token,
            list(field_index.postings),
            scorer=Levenshtein.distance,
            score_cutoff=max_edits,
            limit=None,
        )
        for term, distance, _ in matches:
            if term == token:
                continue
            yield term, 1.0 - distance / max(len(token), len(term))

    @staticmethod
    def _sort_key(sort: SearchSort):
        if sort == SearchSort.NAME:
            return lambda item: (item[0].name.lower(), item[0].id)
        if sort == SearchSort.CREATED_AT:
            return lambda item: (-item[0].created_at.timestamp(), item[0].id)
        if sort == SearchSort.QUALITY_SCORE:
            return lambda item: (
                item[0].quality_score is None,
                -(item[0].quality_score or 0.0),
                item[0].id,
            )
        return lambda item: (-item[1], item[0].id)
