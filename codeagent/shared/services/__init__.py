"""Storage, snapshots, process execution and project discovery."""
