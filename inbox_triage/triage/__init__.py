"""Email triage: rule scoring, AI budgeting, micro-batching and job processors."""
