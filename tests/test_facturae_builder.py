from __future__ import annotations

from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from facturador.config import FACTURAE_NS, BillingSettings
from facturador.models.counterparty import Counterparty
from facturador.models.invoice import DraftLine, InvoiceType, TaxClass
from facturador.services.facturae_builder import batch_identifier, build_facturae, to_bytes
from facturador.services.issuance import InvoiceIssuanceOrchestrator
from facturador.services.tax_engine import DEFAULT_RATE_TABLE
from tests.conftest import xml_text


@pytest.fixture
def issue(data_dir, make_draft):
    orchestrator = InvoiceIssuanceOrchestrator(BillingSettings(), rate_table=DEFAULT_RATE_TABLE)

    def _issue(**kwargs):
        return orchestrator.issue(make_draft(**kwargs), dispatch=False)

    yield _issue
    orchestrator.shutdown()


class TestHeader:
    def test_root_and_version(self, issue):
        doc = build_facturae(issue())
        assert doc.tag == f"{{{FACTURAE_NS}}}Facturae"
        assert xml_text(doc, "FileHeader/SchemaVersion") == "3.2.2"
        assert xml_text(doc, "FileHeader/Modality") == "I"
        assert xml_text(doc, "FileHeader/InvoiceIssuerType") == "EM"

    def test_batch(self, issue):
        invoice = issue()
        doc = build_facturae(invoice)
        assert batch_identifier(invoice) == "B12345678F2025-000001"
        assert xml_text(doc, "FileHeader/Batch/BatchIdentifier") == "B12345678F2025-000001"
        assert xml_text(doc, "FileHeader/Batch/InvoicesCount") == "1"
        assert xml_text(doc, "FileHeader/Batch/TotalInvoicesAmount/TotalAmount") == "121.00"
        assert xml_text(doc, "FileHeader/Batch/TotalExecutableAmount/TotalAmount") == "121.00"
        assert xml_text(doc, "FileHeader/Batch/InvoiceCurrencyCode") == "EUR"


class TestParties:
    def test_seller_legal_entity(self, issue):
        doc = build_facturae(issue())
        seller = doc.find("Parties/SellerParty")
        assert xml_text(seller, "TaxIdentification/PersonTypeCode") == "J"
        assert xml_text(seller, "TaxIdentification/ResidenceTypeCode") == "R"
        assert xml_text(seller, "TaxIdentification/TaxIdentificationNumber") == "B12345678"
        assert xml_text(seller, "LegalEntity/CorporateName") == "Nutrición Ejemplo S.L."
        assert xml_text(seller, "LegalEntity/AddressInSpain/PostCode") == "28001"
        assert xml_text(seller, "LegalEntity/AddressInSpain/CountryCode") == "ESP"
        assert xml_text(seller, "LegalEntity/ContactDetails/ElectronicMail") == "facturacion@example.com"

    def test_buyer_individual_splits_surnames(self, issue):
        doc = build_facturae(issue())
        buyer = doc.find("Parties/BuyerParty")
        assert xml_text(buyer, "TaxIdentification/PersonTypeCode") == "F"
        assert xml_text(buyer, "Individual/Name") == "María"
        assert xml_text(buyer, "Individual/FirstSurname") == "García"
        assert xml_text(buyer, "Individual/SecondSurname") == "López"
        assert xml_text(buyer, "Individual/AddressInSpain/Town") == "Sevilla"

    def test_buyer_company(self, issue, company_counterparty):
        doc = build_facturae(issue(counterparty=company_counterparty))
        buyer = doc.find("Parties/BuyerParty")
        assert xml_text(buyer, "LegalEntity/CorporateName") == "Clínica Norte S.A."
        assert buyer.find("Individual") is None

    def test_overseas_buyer(self, issue):
        foreign = Counterparty(
            nif="PT501442600",
            nombre="Cliente Lisboa Lda.",
            person_type="J",
            direccion="Rua Augusta 100",
            codigo_postal="1100-053",
            poblacion="Lisboa",
            provincia="Lisboa",
            codigo_pais="PT",
        )
        doc = build_facturae(issue(counterparty=foreign))
        buyer = doc.find("Parties/BuyerParty")
        assert xml_text(buyer, "TaxIdentification/ResidenceTypeCode") == "E"
        assert xml_text(buyer, "LegalEntity/OverseasAddress/PostCodeAndTown") == "1100-053 Lisboa"
        assert xml_text(buyer, "LegalEntity/OverseasAddress/CountryCode") == "PRT"


class TestInvoiceBody:
    def test_header_and_totals(self, issue):
        doc = build_facturae(issue())
        inv = doc.find("Invoices/Invoice")
        assert xml_text(inv, "InvoiceHeader/InvoiceNumber") == "F2025-000001"
        assert xml_text(inv, "InvoiceHeader/InvoiceSeriesCode") == "F"
        assert xml_text(inv, "InvoiceHeader/InvoiceClass") == "OO"
        assert inv.find("InvoiceHeader/Corrective") is None
        assert xml_text(inv, "InvoiceIssueData/IssueDate") == "2025-03-14"
        assert xml_text(inv, "InvoiceTotals/TotalGrossAmountBeforeTaxes") == "100.00"
        assert xml_text(inv, "InvoiceTotals/TotalTaxOutputs") == "21.00"
        assert xml_text(inv, "InvoiceTotals/InvoiceTotal") == "121.00"

    def test_one_tax_per_rate_group(self, issue):
        lines = [
            DraftLine("Consulta", Decimal("1"), Decimal("60.00"), TaxClass.GENERAL),
            DraftLine("Dieta personalizada", Decimal("2"), Decimal("15.00"), TaxClass.REDUCED),
            DraftLine("Seguimiento", Decimal("1"), Decimal("40.00"), TaxClass.GENERAL),
        ]
        inv = build_facturae(issue(lines=lines)).find("Invoices/Invoice")
        taxes = inv.findall("TaxesOutputs/Tax")
        assert [xml_text(t, "TaxRate") for t in taxes] == ["21.00", "10.00"]
        assert [xml_text(t, "TaxableBase/TotalAmount") for t in taxes] == ["100.00", "30.00"]
        assert [xml_text(t, "TaxAmount/TotalAmount") for t in taxes] == ["21.00", "3.00"]
        assert xml_text(inv, "InvoiceTotals/InvoiceTotal") == "154.00"

    def test_lines(self, issue):
        lines = [DraftLine("Dieta personalizada", Decimal("2.50"), Decimal("15.00"), TaxClass.REDUCED)]
        line = build_facturae(issue(lines=lines)).find("Invoices/Invoice/Items/InvoiceLine")
        assert xml_text(line, "ItemDescription") == "Dieta personalizada"
        assert xml_text(line, "Quantity") == "2.5"
        assert xml_text(line, "UnitPriceWithoutTax") == "15"
        assert xml_text(line, "TotalCost") == "37.50"
        assert xml_text(line, "TaxesOutputs/Tax/TaxAmount/TotalAmount") == "3.75"

    def test_payment_details_with_due_date(self, issue):
        inv = build_facturae(issue(due_date=date(2025, 4, 13))).find("Invoices/Invoice")
        assert xml_text(inv, "PaymentDetails/Installment/InstallmentDueDate") == "2025-04-13"
        assert xml_text(inv, "PaymentDetails/Installment/PaymentMeans") == "04"

    def test_no_payment_details_without_due_date(self, issue):
        assert build_facturae(issue()).find("Invoices/Invoice/PaymentDetails") is None

    def test_additional_data(self, issue):
        invoice = replace(issue(notes="Pago por transferencia"), authority_reference="A-XYZ")
        text = xml_text(
            build_facturae(invoice), "Invoices/Invoice/AdditionalData/InvoiceAdditionalInformation"
        )
        assert text == "Verifactu CSV: A-XYZ\nPago por transferencia"

    def test_corrective(self, issue):
        issue()
        corrective = issue(
            invoice_type=InvoiceType.CORRECTIVE,
            corrects="F2025-000001",
            correction_reason="Importe erróneo",
        )
        header = build_facturae(corrective).find("Invoices/Invoice/InvoiceHeader")
        assert xml_text(header, "InvoiceNumber") == "F2025-000002"
        assert xml_text(header, "InvoiceClass") == "OR"
        assert xml_text(header, "Corrective/InvoiceNumber") == "F2025-000001"
        assert xml_text(header, "Corrective/TaxPeriod/StartDate") == "2025-01-01"
        assert xml_text(header, "Corrective/AdditionalReasonDescription") == "Importe erróneo"


def test_unnumbered_invoice_rejected(issue):
    with pytest.raises(ValueError, match="numbered"):
        build_facturae(replace(issue(), invoice_number=None))


def test_serialization_is_deterministic(issue):
    invoice = issue()
    first = to_bytes(build_facturae(invoice))
    assert first.startswith(b"<?xml")
    assert first == to_bytes(build_facturae(invoice))
