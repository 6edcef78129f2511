"""
Quiz Bank Backend
=================
Quiz document lifecycle and referential integrity engine for the quiz bank
admin backend.

Architecture:
    - Schema Adapter: Normalizes legacy and sectioned quizzes to one shape
    - Asset Lifecycle Manager: Uploads inline images, deletes orphaned ones
    - Integrity Coordinator: Keeps exam/chapter/class/subject backlinks
    - Quiz Lifecycle Service: Orchestrates create/update/delete as a saga
    - HTTP API + CLI: Flask microservice and maintenance commands

Version: 1.0.0
"""

__version__ = "1.0.0"
