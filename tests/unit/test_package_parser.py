from datetime import date

import pytest

from app.application.services.package_parser import PackageParser, normalize_document
from app.domain.exceptions import PackageParseError
from app.domain.models.invoice import DocumentVariant


@pytest.fixture
def parser():
    return PackageParser()


def test_normalize_document_collapses_whitespace_between_tags():
    compact = "<a><b>x  y</b></a>"
    spaced = "\n<a>\n    <b>x \t y</b>\n</a>\n"
    assert normalize_document(spaced) == normalize_document(compact) == "<a><b>x y</b></a>"


def test_hash_is_stable_across_formatting(parser, invoice_xml):
    compact = invoice_xml("REF-1")
    pretty = invoice_xml("REF-1", pretty=True)
    assert compact != pretty
    assert parser.compute_content_hash(compact) == parser.compute_content_hash(pretty)


def test_hash_changes_with_content(parser, invoice_xml):
    assert parser.compute_content_hash(invoice_xml("REF-1")) != parser.compute_content_hash(invoice_xml("REF-2"))


def test_parse_document_extracts_fa2_fields(parser, invoice_xml):
    document = parser.parse_document(invoice_xml("AAA-111", number="FV/7/2024", total="1 234,50"))

    assert document.external_reference_number == "AAA-111"
    assert document.invoice_number == "FV/7/2024"
    assert document.issue_date == date(2024, 1, 15)
    assert document.seller_name == "Sprzedawca S.A."
    assert document.seller_tax_id == "1111111111"
    assert document.buyer_name == "Odbiorca Sp. z o.o."
    assert document.buyer_tax_id == "5811870973"
    assert document.total_amount == 1234.50
    assert document.currency == "PLN"
    assert document.variant == DocumentVariant.FA2
    assert document.content_hash == parser.compute_content_hash(document.xml_content)


def test_parse_document_with_namespace_and_cdata(parser):
    xml = (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<tns:Faktura xmlns:tns="http://crd.gov.pl/wzor/2023/06/29/12648/">'
        "<tns:ElementReferenceNumber>NS-1</tns:ElementReferenceNumber>"
        "<tns:Fa><tns:P_1>2024-03-01</tns:P_1><tns:P_2><![CDATA[FV/1/2024]]></tns:P_2>"
        "<tns:P_15>10.00</tns:P_15></tns:Fa>"
        "</tns:Faktura>"
    )
    document = parser.parse_document(xml)

    assert document.external_reference_number == "NS-1"
    assert document.invoice_number == "FV/1/2024"
    assert document.total_amount == 10.0


def test_missing_secondary_fields_get_placeholders(parser):
    xml = "<Faktura><ElementReferenceNumber>REF-9</ElementReferenceNumber><Fa><P_1>bad-date</P_1></Fa></Faktura>"
    document = parser.parse_document(xml)

    assert document.invoice_number == "UNKNOWN"
    assert document.seller_name == "UNKNOWN"
    assert document.seller_tax_id == "UNKNOWN"
    assert document.buyer_tax_id is None
    assert document.total_amount == 0.0
    assert document.currency == "PLN"
    assert document.issue_date == date.today()


def test_alternative_tag_names_are_used(parser):
    xml = (
        "<Faktura><ElementReferenceNumber>ALT-1</ElementReferenceNumber><Fa>"
        "<DataWystawienia>2024-02-02</DataWystawienia><NIPSprzedawcy>2222222222</NIPSprzedawcy>"
        "<WartoscBrutto>99.99</WartoscBrutto></Fa></Faktura>"
    )
    document = parser.parse_document(xml)

    assert document.issue_date == date(2024, 2, 2)
    assert document.seller_tax_id == "2222222222"
    assert document.total_amount == 99.99


def test_document_without_reference_number_is_rejected(parser):
    assert parser.parse_document("<Faktura><Fa><P_2>FV/1</P_2></Fa></Faktura>") is None


def test_detect_format(parser, invoice_xml):
    assert parser.detect_format(invoice_xml("REF-1")) == DocumentVariant.FA2
    assert parser.detect_format("<Invoice><InvoiceHeader/></Invoice>") == DocumentVariant.FA3
    assert parser.detect_format("<Dokument/>") == DocumentVariant.UNKNOWN


def test_validate_document(parser, invoice_xml):
    assert parser.validate_document(invoice_xml("REF-1"))
    assert not parser.validate_document("<Faktura><ElementReferenceNumber>X</ElementReferenceNumber></Faktura>")


def test_parse_package_skips_non_xml_and_unreferenced_documents(parser, invoice_xml, zip_package):
    package = zip_package([
        ("001.xml", invoice_xml("REF-1", number="FV/1")),
        ("readme.txt", "not an invoice"),
        ("002.xml", "<Faktura><Fa><P_2>sin referencia</P_2></Fa></Faktura>"),
        ("003.xml", "<Invoice><ElementReferenceNumber>FA3-1</ElementReferenceNumber><InvoiceHeader/></Invoice>"),
        ("004.xml", invoice_xml("REF-4", number="FV/4")),
    ])

    documents = parser.parse_package(package)

    assert [d.external_reference_number for d in documents] == ["REF-1", "FA3-1", "REF-4"]
    assert documents[1].variant == DocumentVariant.FA3


def test_parse_package_reads_latin1_entries(parser, zip_package):
    template = "<Faktura><ElementReferenceNumber>{}</ElementReferenceNumber><Fa><P_3A>{}</P_3A></Fa></Faktura>"
    package = zip_package([
        ("001.xml", template.format("PL-1", "Zakład Łódź").encode("utf-8")),
        ("002.xml", template.format("PL-2", "Café").encode("iso-8859-1")),
    ])

    documents = parser.parse_package(package)

    assert documents[0].seller_name == "Zakład Łódź"
    assert documents[1].seller_name == "Café"


def test_parse_package_rejects_invalid_zip(parser):
    with pytest.raises(PackageParseError):
        parser.parse_package(b"this is not a zip archive")


def test_empty_package_yields_no_documents(parser, zip_package):
    assert parser.parse_package(zip_package([])) == []


def test_fa3_document_with_reference_is_retained_with_placeholders(parser):
    xml = "<Invoice><ElementReferenceNumber>FA3-1</ElementReferenceNumber><InvoiceHeader/></Invoice>"

    document = parser.parse_document(xml)

    assert document.external_reference_number == "FA3-1"
    assert document.variant == DocumentVariant.FA3
    assert document.invoice_number == "UNKNOWN"
    assert document.total_amount == 0.0
    assert document.content_hash == parser.compute_content_hash(xml)
