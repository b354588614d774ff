"""
FastAPI RESTful API for the NovelNest inventory service.

This module provides a REST API for:
- Creating, updating and deleting books owned by the caller
- Reading a book with its author and genre
- Bearer token authentication
"""
