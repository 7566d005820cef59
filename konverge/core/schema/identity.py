"""Resource identity: the cluster-wide key of every record."""

from dataclasses import dataclass


@dataclass(frozen=True, order=True)
class ResourceIdentity:
    """Unique key of a resource across the cluster.

    Attributes:
        kind: Resource kind (e.g. "Deployment")
        namespace: Namespace, empty for cluster-scoped kinds (Namespace, PersistentVolume)
        name: Resource name

    Example:
        >>> ResourceIdentity.parse("Deployment/default/web")
        ResourceIdentity(kind='Deployment', namespace='default', name='web')
        >>> str(ResourceIdentity("Namespace", "", "prod"))
        'Namespace//prod'
    """
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"

    @property
    def cluster_scoped(self) -> bool:
        return self.namespace == ""

    @classmethod
    def parse(cls, text: str) -> "ResourceIdentity":
        """Parse the ``kind/namespace/name`` form produced by ``str()``.

        ``kind/name`` is accepted as shorthand for a cluster-scoped identity.

        Raises:
            ValueError: If the text has the wrong number of parts
        """
        parts = text.split("/")
        if len(parts) == 3:
            return cls(parts[0], parts[1], parts[2])
        if len(parts) == 2:
            return cls(parts[0], "", parts[1])
        raise ValueError(f"Invalid identity {text!r}, expected kind/namespace/name")
