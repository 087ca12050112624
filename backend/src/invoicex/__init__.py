"""
InvoiceX KYB evidence service.

Document storage, business manifests and the verification-request
workflow for the InvoiceX invoice-factoring protocol.
"""

__version__ = "0.1.0"
