from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Dependency(BaseModel):
    """
    A resolved package dependency as supplied by dependency discovery.

    ``key`` (``ecosystem:name@version``) is the join key used by every
    aggregation and scoring stage.
    """

    model_config = ConfigDict(frozen=True)

    # Core Identity
    name: str = Field(..., description="Package name")
    version: str = Field(..., description="Package version")
    ecosystem: str = Field(
        ...,
        description="Ecosystem (npm, pip, go, maven, cargo, nuget, gem, composer)",
    )
    purl: Optional[str] = Field(None, description="Package URL if known")

    # Scope and relationships
    is_direct: bool = Field(
        False, description="True if direct dependency, False if transitive"
    )
    parent: Optional[str] = Field(
        None, description="Name of the package that pulled this one in"
    )
    scope: Optional[str] = Field(
        None, description="Dependency scope (e.g. runtime, dev, optional, peer)"
    )

    @property
    def key(self) -> str:
        return dependency_key(self.ecosystem, self.name, self.version)


def dependency_key(ecosystem: str, name: str, version: str) -> str:
    return f"{ecosystem}:{name}@{version}"
