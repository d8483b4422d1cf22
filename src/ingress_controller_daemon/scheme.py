"""
Type registry for the cluster resources the controller works with.

Each registered kind maps to the typed kubernetes API class that serves it
and the names of its list calls, so watch sources can be built from a kind
alone.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from kubernetes import client as k8s


@dataclass(frozen=True)
class GroupVersionKind:
    group: str
    version: str
    kind: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    def __str__(self) -> str:
        return f"{self.api_version}, Kind={self.kind}"


@dataclass(frozen=True)
class KnownType:
    gvk: GroupVersionKind
    api_class: type
    list_all: str
    list_namespaced: str


class Scheme:
    """Registry of known kinds, keyed by kind name."""

    def __init__(self):
        self._types: Dict[str, KnownType] = {}

    def add_known_type(self, group: str, version: str, kind: str, api_class: type,
                       list_all: str, list_namespaced: str) -> None:
        if kind in self._types:
            raise ValueError(f"kind {kind} is already registered")
        self._types[kind] = KnownType(GroupVersionKind(group, version, kind),
                                      api_class, list_all, list_namespaced)

    def lookup(self, kind: str) -> Optional[KnownType]:
        return self._types.get(kind)

    def validate(self) -> List[str]:
        """Return a list of problems; empty means the scheme is usable."""
        if not self._types:
            return ["scheme has no registered kinds"]
        errors = []
        for kind, known in sorted(self._types.items()):
            for method in (known.list_all, known.list_namespaced):
                if not callable(getattr(known.api_class, method, None)):
                    errors.append(f"{known.gvk}: {known.api_class.__name__} has no method {method}")
        return errors

    def __len__(self) -> int:
        return len(self._types)


def default_scheme() -> Scheme:
    scheme = Scheme()
    scheme.add_known_type("networking.k8s.io", "v1", "Ingress", k8s.NetworkingV1Api,
                          "list_ingress_for_all_namespaces", "list_namespaced_ingress")
    scheme.add_known_type("networking.k8s.io", "v1", "IngressClass", k8s.NetworkingV1Api,
                          "list_ingress_class", "list_ingress_class")
    scheme.add_known_type("", "v1", "Service", k8s.CoreV1Api,
                          "list_service_for_all_namespaces", "list_namespaced_service")
    scheme.add_known_type("", "v1", "Secret", k8s.CoreV1Api,
                          "list_secret_for_all_namespaces", "list_namespaced_secret")
    scheme.add_known_type("", "v1", "Endpoints", k8s.CoreV1Api,
                          "list_endpoints_for_all_namespaces", "list_namespaced_endpoints")
    scheme.add_known_type("", "v1", "ConfigMap", k8s.CoreV1Api,
                          "list_config_map_for_all_namespaces", "list_namespaced_config_map")
    scheme.add_known_type("coordination.k8s.io", "v1", "Lease", k8s.CoordinationV1Api,
                          "list_lease_for_all_namespaces", "list_namespaced_lease")
    return scheme
