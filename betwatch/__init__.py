"""Market-data synchronization engine for tracked prediction-market bets."""

__version__ = "0.1.0"
