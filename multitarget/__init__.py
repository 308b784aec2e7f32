"""Build runner for multi-output units of work.

Common entrypoints:

- `multitarget.cli`: the `multitarget` command (build/status/clean/init/history)
- `multitarget.framework.config`: YAML build description parsing

For the reusable staleness/single-flight kernel, use `unitkit`.
"""
