# app/schemas/registry.py
"""
Typed views over external registry payloads.

Registry responses are only partially documented and vary by endpoint, so
every field is optional and unknown keys are kept. The raw payload is
stored alongside on the profile; these models are only for reading it.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="allow")


class TopusPerson(_Lenient):
    nombre: str | None = None
    s_nombre: str | None = None
    apellido: str | None = None
    s_apellido: str | None = None
    primer_nombre: str | None = None
    segundo_nombre: str | None = None
    primer_apellido: str | None = None
    segundo_apellido: str | None = None
    edad: int | None = None
    eps: str | None = None

    @field_validator("edad", mode="before")
    @classmethod
    def coerce_age(cls, v: Any) -> int | None:
        if v is None or v == "":
            return None
        try:
            return int(str(v).strip().split()[0])
        except (ValueError, IndexError):
            return None

    @field_validator(
        "nombre",
        "s_nombre",
        "apellido",
        "s_apellido",
        "primer_nombre",
        "segundo_nombre",
        "primer_apellido",
        "segundo_apellido",
        "eps",
        mode="before",
    )
    @classmethod
    def blank_to_none(cls, v: Any) -> str | None:
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    def name_parts(self) -> list[str]:
        return [
            part
            for part in (
                self.nombre or self.primer_nombre,
                self.s_nombre or self.segundo_nombre,
                self.apellido or self.primer_apellido,
                self.s_apellido or self.segundo_apellido,
            )
            if part
        ]


class TopusAffiliateData(_Lenient):
    afiliado: TopusPerson | None = None


class TopusResponse(_Lenient):
    """
    Topus answers in one of three shapes: the person under `result`,
    the person flattened at the top level, or under `data.afiliado`.
    """

    result: TopusPerson | None = None
    data: TopusAffiliateData | None = None

    @field_validator("result", "data", mode="before")
    @classmethod
    def ignore_non_objects(cls, v: Any) -> Any:
        return v if isinstance(v, dict) else None


class RegistryIdentity(BaseModel):
    """
    Normalized identity extracted from a Topus payload.
    """

    full_name: str | None = None
    age: int | None = None
    eps: str | None = None

    @property
    def is_valid(self) -> bool:
        return bool(self.full_name)

    @classmethod
    def from_payload(cls, payload: Any) -> "RegistryIdentity":
        if not isinstance(payload, dict):
            return cls()

        response = TopusResponse.model_validate(payload)
        candidates: list[TopusPerson] = []
        if response.result is not None:
            candidates.append(response.result)
        if response.data is not None and response.data.afiliado is not None:
            candidates.append(response.data.afiliado)
        candidates.append(TopusPerson.model_validate(payload))

        for person in candidates:
            parts = person.name_parts()
            if parts:
                return cls(full_name=" ".join(parts), age=person.edad, eps=person.eps)
        return cls()


class RethusResult(_Lenient):
    datos_academicos: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("datos_academicos", mode="before")
    @classmethod
    def ensure_list(cls, v: Any) -> list[dict[str, Any]]:
        if not isinstance(v, list):
            return []
        return [item for item in v if isinstance(item, dict)]

    @property
    def is_valid(self) -> bool:
        return len(self.datos_academicos) > 0
