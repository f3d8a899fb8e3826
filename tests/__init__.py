"""Migration Test Suite.

Test organization:
- unit/: one module per library module (inflate, export, polybase DDL,
  warehouse backends, orchestrator, config loader, runner, CLI)
- integration/: offline end-to-end migrations (DuckDB source, local
  staging folder, in-process warehouse)
"""
