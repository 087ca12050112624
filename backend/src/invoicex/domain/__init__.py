"""
Domain package - Core KYB logic with no external dependencies.

This package contains pure Python domain models, content addressing
and the error taxonomy shared by storage and workflow services.
"""
