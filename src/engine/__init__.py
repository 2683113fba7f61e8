"""PQ Event Engine — correlation and false-event classification.

Modules
───────
  tree        — flat event list → mother/child forest
  correlator  — manual / automatic grouping, adding children, ungrouping
  rules       — rule validation, evaluation, test / apply modes
  detector    — pattern-based false-positive confidence scoring
  analytics   — trend, accuracy and per-rule performance snapshot
  reporter    — write CSV, JSON, TXT outputs
  pipeline    — orchestrate load → group → classify → summarize → report
  cli         — argparse entry-point
"""
