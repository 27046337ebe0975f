"""
autocycle — a self-directed agent heartbeat.

On a fixed interval the service reads its mission, goals and accumulated
knowledge, asks an executor to do one unit of work, and folds the memory
commands in the reply back into a durable knowledge base.
"""

__version__ = "0.1.0"
