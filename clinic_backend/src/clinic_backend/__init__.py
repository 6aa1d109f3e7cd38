"""Clinic records backend: delegated login and server-side sessions."""
