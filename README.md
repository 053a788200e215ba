# sophonminer

Building blocks for a Filecoin block-producing miner service:

- **Configuration** (`sophonminer.config`): the miner's TOML configuration with
  its defaults (`default_miner_config`), validation (`check`), loading
  (`from_file`, `from_reader`), writing (`encode_config`, `config_comment`) and
  conversion of pre-1.8.0 configuration files (`LegacyMinerConfig`).
- **Repository** (`sophonminer.repo`): a directory on disk that holds the
  configuration, the API endpoint and token, a version file and the metadata
  datastore. Using it takes an exclusive lock (`FsRepo.lock`);
  `LockedRepo.migrate` upgrades old layouts.
- **Slash filter** (`sophonminer.slashfilter`): records produced blocks and
  refuses blocks that would cause a consensus fault: two blocks on the same
  parents (time-offset mining) or a block that does not build on the miner's
  own block at the parent epoch (parent grinding). Records live either in a
  key-value datastore (`LocalSlashFilter`) or in an SQL database
  (`SqlSlashFilter`, MySQL via `new_mysql` or in-memory SQLite via
  `new_sql_mock`).
- **Mining recorder** (`sophonminer.recorder`): per-miner, per-epoch records of
  what happened during a mining round, with automatic expiry of old epochs.
- **Miner manager** (`sophonminer.miner_manager`): the set of miners served,
  loaded through an `AuthClient`, with mining switched on and off per miner.
- **Options** (`sophonminer.options`): composable options (`options`,
  `override`, `unset`, `if_`, `apply_if`, `error`) that fill a `Settings`
  object with constructors and ordered start-up hooks (`Invoke`).
- **Datastores** (`sophonminer.datastore`): an in-memory store
  (`MapDatastore`), a namespaced view over another store
  (`NamespaceDatastore`) and an SQLite file store (`SqliteDatastore`).
- Supporting types: Filecoin addresses (`sophonminer.address`), multiaddrs
  (`sophonminer.multiaddr`), CIDs and block headers (`sophonminer.chain`) and
  the shared records and enums in `sophonminer.types` (`StateMining`,
  `ErrorCode`, `MinerInfo`, `MinedBlock`, ...).

Python 3.11 or later is required.

## Configuration

```python
from sophonminer.config import default_miner_config, check, config_comment

cfg = default_miner_config()
text = config_comment(cfg)   # the default configuration with every key commented out
check(cfg)                   # raises ConfigError when required values are missing
```

A fresh default configuration fails `check` until a full node address and
token and at least one gateway address are set.

`from_file(path, default)` returns `default` when the file is missing, and
otherwise applies the values found in the file on top of it (an empty file
leaves it unchanged).

## Repository

```python
from sophonminer.repo import FsRepo

repo = FsRepo("~/.sophon-miner")
repo.init()                  # creates the directory and a default config.toml

with repo.lock() as locked:  # RepoAlreadyLockedError if the lock is held
    locked.migrate()
    cfg = locked.config()
    metadata = locked.datastore("/metadata")
```

`FsRepo.api_endpoint` raises `NoAPIEndpointError` until an endpoint has been
written with `LockedRepo.set_api_endpoint`. Writes through a closed locked
repository raise `ClosedRepoError`.

## Mining recorder

```python
from sophonminer.address import new_id_address
from sophonminer.datastore import MapDatastore
from sophonminer.recorder import DefaultRecorder

recorder = DefaultRecorder(MapDatastore())
miner = new_id_address(1000)

recorder.record(miner, 100, {"state": "mining"})
recorder.record(miner, 100, {"winCount": "1"})   # merged with the earlier record
rows = recorder.query(miner, 100, 10)            # epochs 100..109 that have records
```

Each returned record carries `miner` and `epoch` entries besides the recorded
ones. Asking for more epochs than the per-query maximum (288 by default)
raises `ExceedMaxRecordPerQueryError`.

The module-level `set_datastore`, `record`, `query` and `sub` functions work on
a shared recorder; until `set_datastore` is called `record` and `query` raise
`RecorderDisabledError`, while a `SubRecorder` just skips recording.

## Slash filter

```python
from sophonminer.slashfilter import new_local_mock

slash_filter, ds = new_local_mock()
# slash_filter.mined_block(header, parent_epoch) raises ConsensusFaultError
# if producing `header` would be punished; slash_filter.put_block(...) records
# the outcome of a mining attempt.
```

`new_slash_filter(cfg, ds)` picks the local or the MySQL filter from the
`SlashFilter` section of the configuration. Listing blocks (`list_block`) is
only available with the SQL filter. The MySQL filter connects through
SQLAlchemy's `mysql+pymysql` dialect, so the PyMySQL driver has to be
installed separately to use it; the SQLite-backed filter needs nothing extra.

## What the package does not do

It has no command, no daemon and no RPC server: nothing here mines blocks,
talks to a chain node or a gateway, or serves an API. The miner manager does
not ship a client for a real authentication service; supply your own
`AuthClient` implementation.

## Running the tests

Install the package with its `test` extra and run pytest from the project
directory.