"""kubemirror: replicate Kubernetes resources between clusters.

Continuous synchronisation, one-shot import, event recording and replay,
all driven through a single filter → mutate → apply pipeline.
"""

__version__ = "0.1.0"
