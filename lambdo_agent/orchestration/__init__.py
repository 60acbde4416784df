# Orchestration module: the saga interpreter and the VM lifecycle.
# import lifecycle by its module path: the network provisioner imports this package
from .saga import Saga, SagaStep

__all__ = ["Saga", "SagaStep"]
