"""MediChain pharmaceutical custody backend."""
