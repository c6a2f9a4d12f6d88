"""
Banking Sync Core

OTP-gated action authorization and cross-device record synchronization
for the demo digital bank: an authority service holding canonical records
and one-time passwords, and device-side reconcilers that converge on it.
"""

__version__ = "1.0.0"
