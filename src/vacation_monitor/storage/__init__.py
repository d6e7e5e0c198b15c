"""
Shared document-store plumbing.
"""
