"""
Settlement Pipeline - Jobs Module

Operator entry points run outside the API process:
- settlement_run: journal run, queued-journal recovery, data profile,
  wallet refresh

Reliability Level: Offline Job (Cold Path)
"""
