"""
Clinical case review.

- Cases move through an explicit state machine (workflow.py); nothing else writes `status`
- Status writes are compare-and-swap so racing reviewers cannot both win
- Every committed transition appends one workflow history entry and one notification dispatch
"""
