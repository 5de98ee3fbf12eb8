"""parley: a half-duplex conversational voice loop with self-echo suppression."""

__version__ = "0.1.0"
