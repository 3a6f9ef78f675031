"""auth/ -- Credential store, authenticator, session registry, and request gate.

Layer rule: auth/ imports only stdlib, third-party libraries, core/, and audit/.
It does NOT import from api/ or tracker/. api/ imports from auth/, not the
other way around.
"""
