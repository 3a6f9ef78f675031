"""audit/ -- Append-only, tamper-evident audit trail for TicketGate.

Layer rule: audit/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/, auth/, or tracker/. auth/ and api/ record
events through an AuditTrail instance handed to them at startup.
"""
