"""PQ stores — persistence behind injectable interfaces.

Modules
───────
  base        — EventStore / RuleStore abstract interfaces
  memory      — thread-safe in-memory implementations
  yaml_rules  — YAML-file-backed rule store, rule (de)serialisation
  loaders     — CSV / JSONL event loaders
"""
