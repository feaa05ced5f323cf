"""
Component tests for the Shop API

These tests drive the FastAPI routes through TestClient with the real
service layer and an in-memory MongoDB, validating end-to-end behaviour
across the HTTP, service and storage layers.
"""
