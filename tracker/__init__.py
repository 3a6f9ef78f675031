"""tracker/ -- Client and helpers for the upstream issue tracker (Jira REST v3).

Layer rule: tracker/ imports only stdlib, third-party libraries, and core/.
It knows nothing about sessions, users, or the audit trail; api/ supplies
the caller's identity and records what happened.
"""
