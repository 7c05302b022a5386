"""Knowledge-base REST API package.

Sub-modules expose FastAPI routers:
- search: hybrid search, question answering, embedding backfill
- notes: note creation, editing and related notes
"""
