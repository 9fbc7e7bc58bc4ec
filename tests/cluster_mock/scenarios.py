"""Canned declarations and matching cluster contents.

The gateway target: a Namespace, a PersistentVolume, a Deployment that
carries the volume's server-generated uid, and a Service selecting the
Deployment's pods.
"""

from __future__ import annotations

from converge.models import ObservedState, ResourceIdentity

from .state import MockClusterState

GATEWAY_MANIFESTS = """\
variables:
  namespace:
    default: main
  image:
    default: nginx:1.25
  replicas:
    default: 2
locals:
  app: api-gateway
  labels:
    app: ${local.app}
resources:
  namespace.main:
    manifest:
      apiVersion: v1
      kind: Namespace
      metadata:
        name: ${var.namespace}
  persistent_volume.cfg:
    manifest:
      apiVersion: v1
      kind: PersistentVolume
      metadata:
        name: gateway-cfg
      spec:
        capacity:
          storage: 1Gi
        accessModes: [ReadWriteOnce]
        hostPath:
          path: /data/gateway
"""

GATEWAY_WORKLOADS = """\
resources:
  deployment.api:
    dependsOn: [namespace.main]
    manifest:
      apiVersion: apps/v1
      kind: Deployment
      metadata:
        name: api
        namespace: ${var.namespace}
        annotations:
          gateway/config-volume: ${persistent_volume.cfg.metadata.uid}
      spec:
        replicas: ${var.replicas}
        selector:
          matchLabels: ${local.labels}
        template:
          metadata:
            labels: ${local.labels}
          spec:
            containers:
              - name: gateway
                image: ${var.image}
                ports:
                  - containerPort: 8080
  service.api:
    manifest:
      apiVersion: v1
      kind: Service
      metadata:
        name: api
        namespace: ${var.namespace}
      spec:
        selector: ${deployment.api.spec.selector.matchLabels}
        ports:
          - port: 80
            targetPort: 8080
"""

NAMESPACE = ResourceIdentity(kind="Namespace", name="main")
VOLUME = ResourceIdentity(kind="PersistentVolume", name="gateway-cfg")
DEPLOYMENT = ResourceIdentity(kind="Deployment", name="api", namespace="main")
SERVICE = ResourceIdentity(kind="Service", name="api", namespace="main")

GATEWAY_ORDER = [NAMESPACE, VOLUME, DEPLOYMENT, SERVICE]

LABELS = {"app": "api-gateway"}


def seed_gateway(
    state: MockClusterState,
    replicas: int = 2,
    image: str = "nginx:1.25",
) -> None:
    """Create the gateway objects as an earlier apply would have left them."""
    state.create(NAMESPACE, {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "main"}})
    volume = state.create(
        VOLUME,
        {
            "apiVersion": "v1",
            "kind": "PersistentVolume",
            "metadata": {"name": "gateway-cfg"},
            "spec": {
                "capacity": {"storage": "1Gi"},
                "accessModes": ["ReadWriteOnce"],
                "hostPath": {"path": "/data/gateway"},
            },
        },
    )
    state.create(
        DEPLOYMENT,
        {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {
                "name": "api",
                "namespace": "main",
                "annotations": {"gateway/config-volume": volume["metadata"]["uid"]},
            },
            "spec": {
                "replicas": replicas,
                "selector": {"matchLabels": dict(LABELS)},
                "template": {
                    "metadata": {"labels": dict(LABELS)},
                    "spec": {
                        "containers": [
                            {"name": "gateway", "image": image, "ports": [{"containerPort": 8080}]}
                        ]
                    },
                },
            },
        },
    )
    state.create(
        SERVICE,
        {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": "api", "namespace": "main"},
            "spec": {"selector": dict(LABELS), "ports": [{"port": 80, "targetPort": 8080}]},
        },
    )


def observe(state: MockClusterState) -> ObservedState:
    """Everything in the mock cluster, as the reconciler would read it."""
    return ObservedState({identity: state.get(identity) for identity in state.identities()})
