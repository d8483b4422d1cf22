"""
Ingress Reconciler

Registers the "ingress" controller with the manager. The controller watches
Ingress objects of the configured class together with the Services, Secrets
and Endpoints they reference, and forwards every change to the shared
services. It runs only on the elected leader.
"""

import logging

from .controller import Controller, KindSource, Request, Result
from .errors import SubsystemError

WATCHED_KINDS = ("Ingress", "Service", "Secret", "Endpoints")


class IngressReconciler:
    """
    Attributes:
        client: Kubernetes ApiClient owned by the manager.
        config (Config): Static configuration.
        services (Services): Services subsystem; must be set up first.
        controller (Controller | None): Controller added to the manager.
    """

    def __init__(self, client, config, services):
        self.client = client
        self.config = config
        self.services = services
        self.controller = None
        self.logger = logging.getLogger(config.logger_name).getChild("ingress-reconciler")

    def setup_with(self, ctx, manager) -> None:
        if self.services is None or not self.services.is_setup:
            raise SubsystemError("services must be set up before the ingress reconciler")
        if self.controller is not None:
            raise SubsystemError("ingress reconciler is already set up")
        self.logger = ctx.logger.getChild("ingress-reconciler")

        scheme = manager.get_scheme()
        sources = []
        for kind in WATCHED_KINDS:
            known = scheme.lookup(kind)
            if known is None:
                raise SubsystemError(f"kind {kind} is not registered in the scheme")
            predicate = self.services.handles_ingress if kind == "Ingress" else None
            sources.append(KindSource(known, self.client,
                                      namespace=self.config.watch_namespace,
                                      predicate=predicate,
                                      logger=self.logger.getChild(kind.lower())))

        self.controller = Controller(
            "ingress",
            reconciler=self,
            sources=sources,
            leader_check=manager.is_leader,
            workers=self.config.reconcile_workers,
            metrics=manager.metrics,
            logger=self.logger,
        )
        manager.add(self.controller)

    def reconcile(self, ctx, request: Request) -> Result:
        return self.services.sync(ctx, request)
