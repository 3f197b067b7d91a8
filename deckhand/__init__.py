"""
Deckhand - provisioning and teardown engine for single-instance cloud deployments.

This package creates a fixed network/identity/secret/compute topology for one
logical deployment, records it in a deployment manifest, and later tears it
down in reverse dependency order with tag verification before every delete.
"""

__version__ = "0.1.0"
__author__ = "Deckhand"
