"""
constraint-framework — integration test package

File: tests/integration/__init__.py

Purpose
- Test package marker file.

Functional requirements
- Must not import heavy modules at import time; keep test collection fast.
- Must not open network connections; remote drivers are exercised through mock transports.
"""
