"""School Library - Services Package

Clients for external collaborators:
- HTTP client abstraction used by the identity verification boundary
"""
