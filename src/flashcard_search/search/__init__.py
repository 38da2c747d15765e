"""
Search indexing and query engine package.

- analyzers: tokenizer, diacritic folding and trigram generation
- storage / sqlite_storage: index-table contract, in-memory and SQLite tables
- bloom_filter: per-card bloom membership map
- indexer: per-card indexing, shared/abortable rebuilds and priming
- ranking: none / tfidf / fuzzy query ranking
- workers: request/response worker channels and pool
"""
