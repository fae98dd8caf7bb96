"""
Castle Bot - fault-tolerant orchestration loop for a browser strategy game.
"""

__version__ = "0.4.0"
