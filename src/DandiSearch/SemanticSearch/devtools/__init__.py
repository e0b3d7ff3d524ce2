# === NAVMAP v1 ===
# {
#   "module": "DandiSearch.SemanticSearch.devtools.__init__",
#   "purpose": "Developer tooling helpers for DANDI semantic search.",
#   "sections": []
# }
# === /NAVMAP ===

"""Developer tooling helpers for DANDI semantic search.

The ``devtools`` package makes it easy to run the full pipeline without the
real archive or an embedding service: an in-memory archive simulator with
fault injection, and generators for clustered reference vector corpora used by
recall validation and tests.
"""

from .archive_simulator import ArchiveSimulator
from .reference_vectors import ReferenceCorpus, make_reference_corpus, perturbed_queries

__all__ = (
    "ArchiveSimulator",
    "ReferenceCorpus",
    "make_reference_corpus",
    "perturbed_queries",
)
