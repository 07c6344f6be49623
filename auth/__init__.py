"""auth/ -- Authentication package for the admin console.

Password hashing, the account store, session and remember-me lifecycle,
and registration live here.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or directory/.
api/ and directory/ import from auth/, not the other way around.
"""
