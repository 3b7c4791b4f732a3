"""Search subsystem.

Flow: entity sources → extractors → IndexingCoordinator (SearchIndex rows)
→ SearchQueryEngine (ranked, cached responses).
"""
