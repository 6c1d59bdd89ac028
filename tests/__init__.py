"""
Test Suite for the Correlation Engine

Includes:
- Unit tests for estimator and returns
- Integration tests for the batch job and DAG
- HTTP and CLI end-to-end tests
"""
