# app/core/dispatch/__init__.py
"""
Dispatch core: jobs, bidding, settlement and mission control.

- ``domain`` / ``errors`` / ``ports``: records, typed errors, repository protocols
- ``lifecycle``: job status state machine with set-once timestamps
- ``bidding``: vendor bids and atomic bid selection
- ``commission`` / ``settlement``: commission evaluation and idempotent charging
- ``scoring`` / ``mission_control``: SLA queue, vendor ranking, scorecards
- ``jobs`` / ``services``: dispatcher job operations and outbound notifications

Nothing here touches the database or HTTP directly; infrastructure is
passed in through the ports.
"""
