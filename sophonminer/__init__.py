"""Configuration, repository, slash filter, recorder and miner management for a Filecoin miner."""

__version__ = "1.18.0"

__all__ = [
    "address",
    "chain",
    "config",
    "datastore",
    "miner_manager",
    "multiaddr",
    "options",
    "recorder",
    "repo",
    "slashfilter",
    "types",
]