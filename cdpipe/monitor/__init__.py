"""cdpipe execution monitor: pure read-only projection over the ledger.

The monitor NEVER maintains its own state.  Every call re-reads from the
ledger.  It is a projection, not a source of truth.

Modules
-------
projection
    ``MonitorProjection`` reads the ledger and produces ``MonitorSnapshot``
    Pydantic models: a frozen, point-in-time view of an execution.
renderer
    ``MonitorRenderer`` turns snapshots and pipeline graphs into Rich
    renderables, including continuous ``Rich.Live`` mode.
"""
