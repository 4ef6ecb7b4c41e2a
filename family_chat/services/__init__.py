"""
Service layer for the Family Chat server.

Persistence helpers (conversations, messages) are plain functions operating on
the Flask-SQLAlchemy session; external collaborators (completion provider,
web push, bot settings) are classes constructed by the application factory.
"""
