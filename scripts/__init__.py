"""Operator scripts for the search subsystem.

Scripts include:
- ``provision_search.py``: create the ``search_documents`` schema.
- ``reindex_all.py``: rebuild documents (or only missing vectors) per type.
"""
