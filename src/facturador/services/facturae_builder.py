from __future__ import annotations

from decimal import Decimal

from lxml import etree

from facturador.config import FACTURAE_NS, FACTURAE_VERSION
from facturador.models.counterparty import Counterparty
from facturador.models.invoice import Invoice, InvoiceLine, InvoiceType, TaxGroup
from facturador.models.issuer import Issuer

NSMAP = {"fe": FACTURAE_NS, "ds": "http://www.w3.org/2000/09/xmldsig#"}

# Facturae wants ISO 3166-1 alpha-3 country codes
_COUNTRY_ALPHA3 = {
    "ES": "ESP",
    "PT": "PRT",
    "FR": "FRA",
    "DE": "DEU",
    "IT": "ITA",
    "NL": "NLD",
    "BE": "BEL",
    "IE": "IRL",
    "GB": "GBR",
    "US": "USA",
}

IVA_TAX_TYPE = "01"
UNIT_OF_MEASURE = "01"  # units
PAYMENT_MEANS_TRANSFER = "04"

# Corrective reason 01 = invoice number, the only free-text friendly code
CORRECTION_REASON_CODE = "01"
CORRECTION_REASON_TEXT = "Número de la factura"
CORRECTION_METHOD = "01"  # full replacement
CORRECTION_METHOD_TEXT = "Rectificación íntegra"


def _sub(parent: etree._Element, tag: str, text: str | None = None) -> etree._Element:
    el = etree.SubElement(parent, tag)
    if text is not None:
        el.text = text
    return el


def _amount(value: Decimal) -> str:
    return f"{value:.2f}"


def _plain(value: Decimal) -> str:
    return format(value.normalize(), "f")


def _country3(code: str) -> str:
    return _COUNTRY_ALPHA3.get(code.upper(), code.upper())


def _tax_identification(parent: etree._Element, nif: str, person_type: str, country: str) -> None:
    tax_id = _sub(parent, "TaxIdentification")
    _sub(tax_id, "PersonTypeCode", person_type)
    _sub(tax_id, "ResidenceTypeCode", "R" if country.upper() == "ES" else "E")
    _sub(tax_id, "TaxIdentificationNumber", nif)


def _address(
    parent: etree._Element,
    direccion: str,
    codigo_postal: str,
    poblacion: str,
    provincia: str,
    country: str,
) -> None:
    if country.upper() == "ES":
        addr = _sub(parent, "AddressInSpain")
        _sub(addr, "Address", direccion)
        _sub(addr, "PostCode", codigo_postal)
        _sub(addr, "Town", poblacion)
        _sub(addr, "Province", provincia)
        _sub(addr, "CountryCode", "ESP")
    else:
        addr = _sub(parent, "OverseasAddress")
        _sub(addr, "Address", direccion)
        _sub(addr, "PostCodeAndTown", f"{codigo_postal} {poblacion}")
        _sub(addr, "Province", provincia)
        _sub(addr, "CountryCode", _country3(country))


def _seller(parties: etree._Element, issuer: Issuer) -> None:
    seller = _sub(parties, "SellerParty")
    _tax_identification(seller, issuer.nif, issuer.person_type, issuer.codigo_pais)
    if issuer.person_type == "F":
        entity = _sub(seller, "Individual")
        _sub(entity, "Name", issuer.razon_social)
        _sub(entity, "FirstSurname", "")
    else:
        entity = _sub(seller, "LegalEntity")
        _sub(entity, "CorporateName", issuer.razon_social)
    _address(
        entity,
        issuer.direccion,
        issuer.codigo_postal,
        issuer.poblacion,
        issuer.provincia,
        issuer.codigo_pais,
    )
    if issuer.email or issuer.telefono:
        contact = _sub(entity, "ContactDetails")
        if issuer.telefono:
            _sub(contact, "Telephone", issuer.telefono)
        if issuer.email:
            _sub(contact, "ElectronicMail", issuer.email)


def _buyer(parties: etree._Element, counterparty: Counterparty) -> None:
    buyer = _sub(parties, "BuyerParty")
    _tax_identification(buyer, counterparty.nif, counterparty.person_type, counterparty.codigo_pais)
    if counterparty.person_type == "J":
        entity = _sub(buyer, "LegalEntity")
        _sub(entity, "CorporateName", counterparty.nombre)
    else:
        entity = _sub(buyer, "Individual")
        _sub(entity, "Name", counterparty.nombre)
        surnames = (counterparty.apellidos or "").split(maxsplit=1)
        _sub(entity, "FirstSurname", surnames[0] if surnames else "")
        if len(surnames) > 1:
            _sub(entity, "SecondSurname", surnames[1])
    _address(
        entity,
        counterparty.direccion or "",
        counterparty.codigo_postal or "",
        counterparty.poblacion or "",
        counterparty.provincia or "",
        counterparty.codigo_pais,
    )


def _tax(parent: etree._Element, rate: Decimal, base: Decimal, tax: Decimal) -> None:
    el = _sub(parent, "Tax")
    _sub(el, "TaxTypeCode", IVA_TAX_TYPE)
    _sub(el, "TaxRate", _amount(rate))
    taxable = _sub(el, "TaxableBase")
    _sub(taxable, "TotalAmount", _amount(base))
    amount = _sub(el, "TaxAmount")
    _sub(amount, "TotalAmount", _amount(tax))


def _taxes_outputs(parent: etree._Element, groups: tuple[TaxGroup, ...]) -> None:
    outputs = _sub(parent, "TaxesOutputs")
    for group in groups:
        _tax(outputs, group.rate, group.base, group.tax)


def _line(items: etree._Element, line: InvoiceLine) -> None:
    el = _sub(items, "InvoiceLine")
    _sub(el, "ItemDescription", line.description)
    _sub(el, "Quantity", _plain(line.quantity))
    _sub(el, "UnitOfMeasure", UNIT_OF_MEASURE)
    _sub(el, "UnitPriceWithoutTax", _plain(line.unit_price))
    _sub(el, "TotalCost", _amount(line.base))
    _sub(el, "GrossAmount", _amount(line.base))
    taxes = _sub(el, "TaxesOutputs")
    _tax(taxes, line.rate, line.base, line.tax)


def batch_identifier(invoice: Invoice) -> str:
    return f"{invoice.issuer.nif}{invoice.invoice_number}"


def build_facturae(invoice: Invoice) -> etree._Element:
    """Build a Facturae 3.2.2 document for one numbered invoice.

    Only invoice data goes into the tree (no generation timestamps), so the
    same invoice always yields the same document.
    """
    if invoice.invoice_number is None:
        raise ValueError("Invoice must be numbered before building Facturae")

    total = _amount(invoice.breakdown.total)
    root = etree.Element(f"{{{FACTURAE_NS}}}Facturae", nsmap=NSMAP)  # type: ignore[arg-type]

    # FileHeader
    header = _sub(root, "FileHeader")
    _sub(header, "SchemaVersion", FACTURAE_VERSION)
    _sub(header, "Modality", "I")
    _sub(header, "InvoiceIssuerType", "EM")
    batch = _sub(header, "Batch")
    _sub(batch, "BatchIdentifier", batch_identifier(invoice))
    _sub(batch, "InvoicesCount", "1")
    for tag in ("TotalInvoicesAmount", "TotalOutstandingAmount", "TotalExecutableAmount"):
        _sub(_sub(batch, tag), "TotalAmount", total)
    _sub(batch, "InvoiceCurrencyCode", invoice.currency)

    # Parties
    parties = _sub(root, "Parties")
    _seller(parties, invoice.issuer)
    _buyer(parties, invoice.counterparty)

    # Invoices
    el = _sub(_sub(root, "Invoices"), "Invoice")
    inv_header = _sub(el, "InvoiceHeader")
    _sub(inv_header, "InvoiceNumber", invoice.invoice_number)
    _sub(inv_header, "InvoiceSeriesCode", invoice.issuer.serie)
    _sub(inv_header, "InvoiceDocumentType", "FC")
    if invoice.invoice_type == InvoiceType.CORRECTIVE:
        _sub(inv_header, "InvoiceClass", "OR")
        corrective = _sub(inv_header, "Corrective")
        _sub(corrective, "InvoiceNumber", invoice.corrects or "")
        _sub(corrective, "ReasonCode", CORRECTION_REASON_CODE)
        _sub(corrective, "ReasonDescription", CORRECTION_REASON_TEXT)
        period = _sub(corrective, "TaxPeriod")
        _sub(period, "StartDate", invoice.issue_date.replace(month=1, day=1).isoformat())
        _sub(period, "EndDate", invoice.issue_date.replace(month=12, day=31).isoformat())
        _sub(corrective, "CorrectionMethod", CORRECTION_METHOD)
        _sub(corrective, "CorrectionMethodDescription", CORRECTION_METHOD_TEXT)
        if invoice.correction_reason:
            _sub(corrective, "AdditionalReasonDescription", invoice.correction_reason)
    else:
        _sub(inv_header, "InvoiceClass", "OO")

    issue = _sub(el, "InvoiceIssueData")
    _sub(issue, "IssueDate", invoice.issue_date.isoformat())
    _sub(issue, "InvoiceCurrencyCode", invoice.currency)
    _sub(issue, "TaxCurrencyCode", invoice.currency)
    _sub(issue, "LanguageName", "es")

    _taxes_outputs(el, invoice.breakdown.groups)

    totals = _sub(el, "InvoiceTotals")
    _sub(totals, "TotalGrossAmount", _amount(invoice.breakdown.base))
    _sub(totals, "TotalGrossAmountBeforeTaxes", _amount(invoice.breakdown.base))
    _sub(totals, "TotalTaxOutputs", _amount(invoice.breakdown.tax))
    _sub(totals, "TotalTaxesWithheld", "0.00")
    _sub(totals, "InvoiceTotal", total)
    _sub(totals, "TotalOutstandingAmount", total)
    _sub(totals, "TotalExecutableAmount", total)

    items = _sub(el, "Items")
    for line in invoice.lines:
        _line(items, line)

    if invoice.due_date is not None:
        installment = _sub(_sub(el, "PaymentDetails"), "Installment")
        _sub(installment, "InstallmentDueDate", invoice.due_date.isoformat())
        _sub(installment, "InstallmentAmount", total)
        _sub(installment, "PaymentMeans", PAYMENT_MEANS_TRANSFER)

    info = []
    if invoice.authority_reference:
        info.append(f"Verifactu CSV: {invoice.authority_reference}")
    if invoice.notes:
        info.append(invoice.notes)
    if info:
        extra = _sub(el, "AdditionalData")
        _sub(extra, "InvoiceAdditionalInformation", "\n".join(info))

    return root


def to_bytes(document: etree._Element) -> bytes:
    return etree.tostring(document, xml_declaration=True, encoding="UTF-8")
