"""auth/ -- Credentials, sessions and account identity for moodledger.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/, ledger/ or collectibles/.
api/ and collectibles/ import from auth/, not the other way around.
"""
