"""
Legacy router upgrade tool - operator-side safe-upgrade delivery.

This package delivers the safe-upgrade helper and a firmware image to
embedded devices whose shell lacks SCP/SFTP, verifies every transfer, and
drives the dual-partition safe upgrade to completion.
"""

__version__ = "0.1.0"
