"""
Vending engine - transaction and inventory consistency service.

Keeps order status, payment status and slot stock consistent for an
unattended vending machine fed by payment webhooks, a device channel
and sensor telemetry.
"""

__version__ = "1.0.0"
