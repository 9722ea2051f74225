"""Terminal dashboard for running EC2 instances across every region."""

__version__ = "0.1.0"
