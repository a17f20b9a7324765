"""
Persisted session records: cell snapshots, connections and the provenance log.
"""
