"""WhatsApp Chat Manager"""

__version__ = "1.0.0"
