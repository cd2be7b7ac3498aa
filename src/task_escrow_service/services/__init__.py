"""Business logic and storage for tasks, escrow and disputes."""
