"""
streamchaos: fault-injection harness for clustered durable message logs.

Drives a local (or external) JetStream cluster through pauses, resumes and
destructive restarts while simulated clients publish and consume, and stops
the moment two clients disagree about what lives at a stream position.
"""

__version__ = "0.1.0"
