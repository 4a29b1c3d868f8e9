"""
SyncDB JMAP Server - state-based record synchronization.

This package implements a versioned-record store that lets clients fetch
records by id and ask for an incremental diff of everything that changed
since a state token they saw earlier:
- Typed record collections with per-record modseq bookkeeping
- A per-type watermark bounding the computable change history
- Paginated, exactly-resumable change diffs
- A sequential multi-call dispatcher for JMAP-style batches

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌──────────────────┐
    │   Client    │────▶│    HTTP     │────▶│    Dispatcher    │
    │  (batch)    │     │   adapter   │     │  (method table)  │
    └─────────────┘     └─────────────┘     └────────┬─────────┘
                                                     │
                        ┌────────────────────────────┼───────────┐
                        │                            │           │
                        ▼                            ▼           ▼
                  ┌──────────┐               ┌──────────┐  ┌──────────┐
                  │ Mutation │               │ Changes  │  │  Query   │
                  └────┬─────┘               └────┬─────┘  └────┬─────┘
                       │                          │             │
                       ▼                          ▼             ▼
                  ┌─────────────────────────────────────────────────┐
                  │   RecordStore (SQLite file per account / memory) │
                  └─────────────────────────────────────────────────┘

Invariants:
    - Modseqs are per type, strictly increasing, never reused
    - Deleted records stay as tombstones so diffs can report them
    - Every write is one atomic transaction covering records + watermark
    - Reads observe one consistent snapshot for their whole duration

How to change safely:
    - New record fields go into the type's RecordTypeDef first
    - Never rewrite a record's created modseq
    - Keep the state token a plain decimal modseq
"""

from ._version import __version__

__all__ = ["__version__"]
