"""auth/ -- Authentication core for keyward.

Keystore, password hashing, sessions, JWT access tokens, rotating refresh
tokens, OAuth handshakes and CSRF double-submit, composed by auth.runtime.

Layer rule: auth/ imports only stdlib + third-party libraries, plus
core.config under TYPE_CHECKING for the from_settings() constructors.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
