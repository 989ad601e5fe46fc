from __future__ import annotations

import getpass
import logging
import os
import stat
import sys
import time
from datetime import date
from importlib.resources import files
from pathlib import Path

USAGE = """\
Uso: facturador <comando> [argumentos]

  init                                 crea la configuración de ejemplo
  issue <borrador.yaml>                emite una factura
  verify <NIF>                         recalcula la cadena de huellas
  resume <NIF>                         reanuda un emisor detenido
  retry                                reintenta los envíos pendientes
  failures                             envíos que requieren intervención
  requeue <NIF> <clave>                vuelve a encolar un envío agotado
  export <NIF> <id-factura>            genera el fichero Facturae
  void <NIF> <id-factura> <motivo>     anula una factura no enviada
  status                               resumen por emisor
  check                                prueba la conexión con la AEAT
  worker                               reintenta envíos en segundo plano hasta Ctrl+C
"""


def _configure_logging() -> None:
    level = os.environ.get("FACTURADOR_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _check_keyring_available() -> bool:
    """Check if keyring is installed with a usable backend."""
    try:
        import keyring
        from keyring.backends.fail import Keyring as FailKeyring

        return not isinstance(keyring.get_keyring(), FailKeyring)
    except Exception:
        return False


def _upsert_env_var(env_file: Path, key: str, value: str) -> None:
    """Set or update a key=value pair in a .env file, creating it if needed."""
    from dotenv import set_key

    env_file.parent.mkdir(parents=True, exist_ok=True)
    if not env_file.exists():
        env_file.touch()
    set_key(str(env_file), key, value)


def _remove_env_var(env_file: Path, key: str) -> None:
    """Remove a key from a .env file if present."""
    from dotenv import unset_key

    if env_file.exists():
        unset_key(str(env_file), key)


def _warn_open_permissions(env_file: Path) -> None:
    """Warn if .env file has group/other read permissions (Unix only)."""
    try:
        mode = env_file.stat().st_mode
        if mode & (stat.S_IRGRP | stat.S_IROTH):
            print(f"\n  AVISO: {env_file} tiene permisos abiertos.")
            print("  Recomendación: chmod 600", env_file)
    except OSError:
        pass


def _setup_certificate(config_dir: Path) -> bool:
    """Interactive certificate setup. Returns True if the certificate was configured."""
    print()
    print("Certificado electrónico")
    print("───────────────────────")
    print()

    while True:
        pfx_path = input("Ruta del certificado .pfx/.p12 (vacío para omitir): ").strip()
        if not pfx_path:
            print("  Configuración del certificado omitida.")
            return False
        if Path(pfx_path).is_file():
            break
        print(f"  Fichero no encontrado: {pfx_path}")

    pfx_password = getpass.getpass("Contraseña del certificado: ")

    print()
    print("Validando certificado…")
    try:
        from facturador.utils.certificate import validate_certificate

        info = validate_certificate(pfx_path, pfx_password)
    except Exception as e:
        print(f"  ERROR: certificado no válido o contraseña incorrecta ({e})")
        print("  Configuración del certificado cancelada.")
        return False

    print(f"  Titular: {info['subject']}")
    if info["holder_nif"]:
        print(f"  NIF del titular: {info['holder_nif']}")
    print(f"  Válido hasta: {info['not_after']}")
    if info["valid"]:
        print("  Certificado vigente")
    else:
        print("  AVISO: certificado caducado")

    env_file = config_dir / ".env"
    _upsert_env_var(env_file, "CERT_PFX_PATH", pfx_path)

    print()
    print("¿Dónde guardar la contraseña?")

    keyring_ok = _check_keyring_available()
    options: list[tuple[str, str]] = []
    if keyring_ok:
        options.append(("1", "Llavero del sistema (recomendado)"))
    options.append(("2", "Fichero .env del directorio de configuración"))
    options.append(("3", "No guardarla (definirla a mano)"))

    for num, label in options:
        print(f"  {num}. {label}")

    if not keyring_ok:
        print()
        print("  Nota: llavero del sistema no disponible.")

    print()
    valid_choices = {num for num, _ in options}
    choice = ""
    while choice not in valid_choices:
        choice = input(f"Opción [{'/'.join(sorted(valid_choices))}]: ").strip()

    from facturador.config import _delete_keyring_password

    if choice == "1" and keyring_ok:
        from facturador.config import _set_keyring_password

        if _set_keyring_password(pfx_password):
            print("  Contraseña guardada en el llavero del sistema.")
            _remove_env_var(env_file, "CERT_PFX_PASSWORD")
        else:
            print("  ERROR: no se pudo usar el llavero. Se guarda en .env.")
            _upsert_env_var(env_file, "CERT_PFX_PASSWORD", pfx_password)
            _warn_open_permissions(env_file)
    elif choice == "2":
        _upsert_env_var(env_file, "CERT_PFX_PASSWORD", pfx_password)
        print(f"  Contraseña guardada en {env_file}")
        _warn_open_permissions(env_file)
        _delete_keyring_password()
    else:
        _remove_env_var(env_file, "CERT_PFX_PASSWORD")
        _delete_keyring_password()
        print("  Contraseña no guardada.")
        print("  Defina CERT_PFX_PASSWORD en su shell o .env antes de emitir.")

    return True


TEMPLATES = [
    "settings.yaml.example",
    "tax_rates.yaml.example",
    "draft.yaml.example",
    "issuers/B12345678.yaml.example",
    "counterparties/cliente-ejemplo.yaml.example",
]


def _init_config() -> None:
    """Copy bundled config templates to the user's config/data directories."""
    from facturador.config import get_config_dir, get_data_dir

    config_dir = get_config_dir()
    data_dir = get_data_dir()
    templates = files("facturador") / "templates"

    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "issuers").mkdir(parents=True, exist_ok=True)
    (config_dir / "counterparties").mkdir(parents=True, exist_ok=True)
    data_dir.mkdir(parents=True, exist_ok=True)

    copied = 0
    for rel in TEMPLATES:
        dest = config_dir / rel
        if dest.exists():
            print(f"  ya existe: {dest}")
            continue
        src = templates / rel
        with src.open("rb") as f:
            dest.write_bytes(f.read())
        print(f"  creado: {dest}")
        copied += 1

    print()
    print(f"Configuración: {config_dir}")
    print(f"Datos:         {data_dir}")

    print()
    cert_configured = False
    try:
        answer = input("¿Configurar ahora el certificado electrónico? [S/n]: ").strip().lower()
        if answer in ("", "s", "si", "sí", "y", "yes"):
            cert_configured = _setup_certificate(config_dir)
    except (EOFError, KeyboardInterrupt):
        print()

    print()
    if copied:
        print("Siguientes pasos:")
        print("  1. Renombre issuers/B12345678.yaml.example con el NIF del emisor")
        print("  2. Cree un fichero por cliente en counterparties/")
        if not cert_configured:
            print("  3. Defina CERT_PFX_PATH y CERT_PFX_PASSWORD en .env")
            print("  4. Ejecute: facturador issue borrador.yaml")
        else:
            print("  3. Ejecute: facturador issue borrador.yaml")
    else:
        print("No se ha creado ningún fichero nuevo (ya existían todos).")


def _load_draft(path: Path):
    """Read a draft YAML into an InvoiceDraft.

    Expected keys: issuer (NIF), counterparty (slug), issue_date, lines,
    and optionally due_date, notes, corrects, correction_reason.
    """
    from facturador.config import load_counterparty, load_issuer, load_yaml
    from facturador.models.counterparty import Counterparty
    from facturador.models.invoice import DraftLine, InvoiceDraft, InvoiceType
    from facturador.models.issuer import Issuer
    from facturador.utils.validators import validate_date

    data = load_yaml(path)
    issue_date = date.fromisoformat(validate_date(str(data["issue_date"])))
    due_date = data.get("due_date")
    corrects = data.get("corrects")
    return InvoiceDraft(
        issuer=Issuer.from_dict(load_issuer(str(data["issuer"]).upper())),
        counterparty=Counterparty.from_dict(load_counterparty(str(data["counterparty"]))),
        issue_date=issue_date,
        due_date=date.fromisoformat(validate_date(str(due_date))) if due_date else None,
        lines=tuple(DraftLine.from_dict(line) for line in data.get("lines", [])),
        invoice_type=InvoiceType.CORRECTIVE if corrects else InvoiceType.COMPLETE,
        corrects=corrects,
        correction_reason=data.get("correction_reason"),
        notes=data.get("notes"),
    )


def _print_invoice(invoice) -> None:
    from facturador.utils.formatters import format_eur, format_rate

    print(f"Factura {invoice.invoice_number} ({invoice.status})")
    print(f"  Id:          {invoice.id}")
    print(f"  Cliente:     {invoice.counterparty.full_name} ({invoice.counterparty.nif})")
    for group in invoice.breakdown.groups:
        print(f"  IVA {format_rate(group.rate):>7}: base {format_eur(group.base)}, cuota {format_eur(group.tax)}")
    print(f"  Total:       {format_eur(invoice.breakdown.total)}")
    print(f"  Huella:      {invoice.chain_hash}")
    if invoice.authority_reference:
        print(f"  CSV:         {invoice.authority_reference}")
    if invoice.facturae_document_path:
        print(f"  Facturae:    {invoice.facturae_document_path}")


def _print_record(record) -> None:
    print(
        f"  {record.issuer_id} {record.fiscal_year}/{record.sequence_number:06d} "
        f"{record.status} ({record.attempts} intentos) clave={record.idempotency_key}"
    )
    if record.last_error:
        print(f"      último error: {record.last_error}")


def _cmd_issue(args: list[str]) -> None:
    from facturador.services.issuance import InvoiceIssuanceOrchestrator

    orchestrator = InvoiceIssuanceOrchestrator()
    try:
        invoice = orchestrator.issue(_load_draft(Path(args[0])))
    finally:
        # Lets the first submission attempt finish before exiting
        orchestrator.shutdown(wait=True)
    _print_invoice(orchestrator.get_invoice(invoice.issuer.nif, invoice.id))


def _cmd_verify(args: list[str]) -> None:
    from facturador.services.issuance import InvoiceIssuanceOrchestrator

    orchestrator = InvoiceIssuanceOrchestrator()
    count = orchestrator.verify(args[0].upper())
    orchestrator.shutdown()
    print(f"Cadena correcta: {count} registros verificados")


def _cmd_resume(args: list[str]) -> None:
    from facturador.config import load_settings
    from facturador.utils import ledger

    if ledger.resume(args[0].upper(), load_settings().env):
        print(f"Emisor {args[0].upper()} reanudado")
    else:
        print(f"El emisor {args[0].upper()} no estaba detenido")


def _coordinator():
    from facturador.config import load_settings
    from facturador.services.submission import SubmissionCoordinator

    return SubmissionCoordinator(load_settings())


def _cmd_retry(args: list[str]) -> None:
    results = _coordinator().process_due()
    print(f"{len(results)} envíos procesados")
    for record in results:
        _print_record(record)


def _cmd_failures(args: list[str]) -> None:
    records = _coordinator().failures()
    if not records:
        print("No hay envíos pendientes de intervención")
        return
    for record in records:
        _print_record(record)


def _cmd_requeue(args: list[str]) -> None:
    record = _coordinator().requeue(args[0].upper(), args[1])
    print("Envío reencolado:")
    _print_record(record)


def _cmd_export(args: list[str]) -> None:
    from facturador.services.issuance import InvoiceIssuanceOrchestrator

    orchestrator = InvoiceIssuanceOrchestrator()
    path = orchestrator.export(args[0].upper(), args[1])
    orchestrator.shutdown()
    print(f"Facturae generado: {path}")


def _cmd_void(args: list[str]) -> None:
    from facturador.services.issuance import InvoiceIssuanceOrchestrator

    orchestrator = InvoiceIssuanceOrchestrator()
    invoice = orchestrator.void(args[0].upper(), args[1], " ".join(args[2:]))
    orchestrator.shutdown()
    print(f"Factura {invoice.invoice_number} anulada")


def _cmd_status(args: list[str]) -> None:
    from facturador.services.issuance import InvoiceIssuanceOrchestrator
    from facturador.utils.ledger import check_ledger_health

    orchestrator = InvoiceIssuanceOrchestrator()
    health = check_ledger_health(orchestrator.env)
    for issuer_id in health.corrupt:
        print(f"{issuer_id}: LIBRO ILEGIBLE, restaure una copia")
    for row in orchestrator.status():
        halted = row["halted"]
        state = f"DETENIDO ({halted['reason']})" if halted else "activo"
        counts = ", ".join(f"{k}={v}" for k, v in sorted(row["submissions"].items())) or "sin envíos"
        print(f"{row['issuer_id']}: {state}; {row['entries']} registros; {counts}")
    orchestrator.shutdown()


def _cmd_check(args: list[str]) -> None:
    from facturador.config import get_cert_password, get_cert_path, load_settings
    from facturador.services.aeat_client import check_connectivity

    env = load_settings().env
    check_connectivity(get_cert_path(), get_cert_password(), env)
    print(f"AEAT ({env}) accesible")


def _cmd_worker(args: list[str]) -> None:
    from facturador.services.scheduler import SubmissionScheduler

    scheduler = SubmissionScheduler(_coordinator())
    processed = scheduler.run_once()
    scheduler.start()
    print(f"{processed} envíos procesados; reintentando cada {scheduler.interval:.0f}s (Ctrl+C para salir)")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()
    print("Reintentos detenidos")


COMMANDS = {
    "issue": (_cmd_issue, 1),
    "verify": (_cmd_verify, 1),
    "resume": (_cmd_resume, 1),
    "retry": (_cmd_retry, 0),
    "failures": (_cmd_failures, 0),
    "requeue": (_cmd_requeue, 2),
    "export": (_cmd_export, 2),
    "void": (_cmd_void, 3),
    "status": (_cmd_status, 0),
    "check": (_cmd_check, 0),
    "worker": (_cmd_worker, 0),
}


def main() -> None:
    """Entry point for the facturador CLI."""
    args = sys.argv[1:]
    if not args or args[0] in ("-h", "--help", "help"):
        print(USAGE)
        return

    if args[0] == "init":
        _init_config()
        return

    command = COMMANDS.get(args[0])
    if command is None or len(args) - 1 < command[1]:
        print(USAGE)
        sys.exit(2)

    _configure_logging()
    from facturador.services.exceptions import FacturadorError

    func, _ = command
    try:
        func(args[1:])
    except (FacturadorError, KeyError, FileNotFoundError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
