"""
kubebroker - Kubernetes resource reconciliation broker.

Realizes provider-neutral application pod specs as Kubernetes objects and
keeps them converged with the declared state.
"""

__version__ = "0.1.0"
