"""Top‑level package for the branch store server.

The TCP listener lives in :mod:`store_server`, the per-connection protocol
in :mod:`client_handler`, pricing and checkout in :mod:`pricing` and
:mod:`sales`, and the flat-file tables in :mod:`line_store`,
:mod:`inventory`, :mod:`customers` and :mod:`auth`.
"""
