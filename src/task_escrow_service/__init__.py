"""Task Escrow Service - escrowed task marketplace with milestones and disputes."""

__version__ = "0.1.0"
