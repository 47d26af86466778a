"""Storage collaborators: worker, tool, skill and provider-key records.

The supervisor and gateway only depend on the protocols in
``agentplane.store.base``. ``SqliteStore`` is the bundled implementation.
"""
