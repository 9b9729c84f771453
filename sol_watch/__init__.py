"""Multi-venue Solana swap watcher: subscribe, resolve, extract, append."""

__all__ = [
    "cli",
    "config",
    "venues",
    "records",
    "rpc",
    "resolver",
    "swaps",
    "dedup",
    "transport",
    "worker",
    "pipeline",
    "writers_ndjson",
    "ws_primitives",
    "runlog",
    "health",
    "watch",
]
