from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Counterparty:
    """Invoice recipient (destinatario)."""

    nif: str
    nombre: str
    person_type: str = "F"  # F = física, J = jurídica
    apellidos: str | None = None
    direccion: str | None = None
    codigo_postal: str | None = None
    poblacion: str | None = None
    provincia: str | None = None
    codigo_pais: str = "ES"

    @classmethod
    def from_dict(cls, d: dict) -> Counterparty:
        """Create a Counterparty from a YAML-loaded dict, applying defaults for optional fields."""
        return cls(
            nif=str(d["nif"]).upper(),
            nombre=d["nombre"],
            person_type=d.get("person_type", "F"),
            apellidos=d.get("apellidos"),
            direccion=d.get("direccion"),
            codigo_postal=str(d["codigo_postal"]) if d.get("codigo_postal") else None,
            poblacion=d.get("poblacion"),
            provincia=d.get("provincia"),
            codigo_pais=d.get("codigo_pais", "ES"),
        )

    @property
    def full_name(self) -> str:
        if self.apellidos:
            return f"{self.nombre} {self.apellidos}"
        return self.nombre

    @property
    def has_address(self) -> bool:
        return bool(self.direccion and self.codigo_postal and self.poblacion and self.provincia)

    def to_dict(self) -> dict:
        return {
            "nif": self.nif,
            "nombre": self.nombre,
            "person_type": self.person_type,
            "apellidos": self.apellidos,
            "direccion": self.direccion,
            "codigo_postal": self.codigo_postal,
            "poblacion": self.poblacion,
            "provincia": self.provincia,
            "codigo_pais": self.codigo_pais,
        }
