from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Issuer:
    """Issuer (emisor): the professional or company issuing the invoices."""

    nif: str
    razon_social: str
    direccion: str
    codigo_postal: str
    poblacion: str
    provincia: str
    codigo_pais: str = "ES"
    serie: str = "F"
    person_type: str = "J"  # J = jurídica, F = física
    email: str | None = None
    telefono: str | None = None
    clave_regimen: str = "01"  # 01 = régimen general
    calificacion: str = "S1"  # S1 = sujeta y no exenta

    @classmethod
    def from_dict(cls, d: dict) -> Issuer:
        """Create an Issuer from a YAML-loaded dict, applying defaults for optional fields."""
        return cls(
            nif=str(d["nif"]).upper(),
            razon_social=d["razon_social"],
            direccion=d["direccion"],
            codigo_postal=str(d["codigo_postal"]),
            poblacion=d["poblacion"],
            provincia=d["provincia"],
            codigo_pais=d.get("codigo_pais", "ES"),
            serie=str(d.get("serie", "F")),
            person_type=d.get("person_type", "J"),
            email=d.get("email"),
            telefono=str(d["telefono"]) if d.get("telefono") else None,
            clave_regimen=str(d.get("clave_regimen", "01")).zfill(2),
            calificacion=d.get("calificacion", "S1"),
        )

    def to_dict(self) -> dict:
        return {
            "nif": self.nif,
            "razon_social": self.razon_social,
            "direccion": self.direccion,
            "codigo_postal": self.codigo_postal,
            "poblacion": self.poblacion,
            "provincia": self.provincia,
            "codigo_pais": self.codigo_pais,
            "serie": self.serie,
            "person_type": self.person_type,
            "email": self.email,
            "telefono": self.telefono,
            "clave_regimen": self.clave_regimen,
            "calificacion": self.calificacion,
        }
