"""Wallet collaborators for the privileged process.

eth-account signing, the active-account session with its keystore, the
chain registry, and per-origin connection records.  None of these know
about messages; the dispatcher calls into them.
"""
