"""
sshagentd - SSH Agent Protocol core

Wire codec, message model, dispatcher and threaded connection supervisor
for agents that keep private keys away from SSH clients.
"""

__version__ = "1.0.0"
__license__ = "Apache License 2.0"
