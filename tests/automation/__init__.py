"""
Automation Core Test Suite.

- Record store conditional updates (locks, claims, post count guard)
- Rule evaluation, draft selection, default values
- Auto-scheduler orchestration
- Stuck-job / past-due / lock cleanup recovery sweeps
- Error categorization
"""
