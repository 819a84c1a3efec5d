"""
afip-invoicer — AFIP WSAA ticket lifecycle and WSFEv1 invoice authorization.

Signs login requests with the taxpayer certificate, caches and persists
the resulting security tickets, and requests CAE codes for sequentially
numbered vouchers.
"""

__version__ = "0.1.0"
