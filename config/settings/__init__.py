"""
Django settings package for the document database backup service.

This package contains environment-specific settings modules:
- base.py: Common settings and environment parsing
- development.py: Development-specific settings
- production.py: Production-specific settings
- test.py: Settings for the test suite

The appropriate settings module is loaded based on the DJANGO_SETTINGS_MODULE
environment variable.
"""
