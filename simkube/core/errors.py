# simkube/core/errors.py

class SkControllerError(Exception):
    """Base class for errors the simulation reconciler surfaces to its runner."""


class NamespaceNotFound(SkControllerError):
    def __init__(self, name: str):
        super().__init__(f"namespace not found: {name}")
        self.name = name


class SkDriverError(Exception):
    """Base class for errors raised while mutating a pod in the admission path."""


class OwnerNotFound(SkDriverError):
    def __init__(self, ns_name: str):
        super().__init__(f"owner object not found: {ns_name}")
        self.ns_name = ns_name


class PodSpecMissing(SkDriverError):
    def __init__(self, ns_name: str):
        super().__init__(f"pod has no spec: {ns_name}")
        self.ns_name = ns_name
