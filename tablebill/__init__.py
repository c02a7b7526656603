"""
                Table Billing Service

Backend for QR table ordering: customers place orders from a table,
staff fulfil them, and every order is reconciled into session and
table bills that are paid without double-charging.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
