"""Run-time machinery: adapters, the DAG executor, run coordination,
checkpoints, dead letters, circuit breaking and distributed locks."""
