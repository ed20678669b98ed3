"""
Lifecycle management for a single-host staking stack: execution/consensus node pairs, validator
clients, a remote signer and a metrics stack, each deployed as a group of containers.

The public entry points are:

- `nodelib.tasks.lifecycle.execute` to run an action (install, start, stop, update, remove)
- `nodelib.tasks.installer.install` to create a new instance transactionally
- `nodelib.tasks.refcount.can_remove` to decide if a shared resource may be torn down
- `nodelib.tasks.monitoring.regenerate_config` to rebuild a derived config file under lock
"""
