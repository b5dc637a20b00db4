# app/application/services/package_parser.py
import hashlib
import io
import logging
import re
import zipfile
from datetime import date, datetime
from typing import Callable, Dict, List, Optional

from lxml import etree

from app.domain.exceptions import DocumentParseError, PackageParseError
from app.domain.models.invoice import DocumentVariant, InvoiceDocument

logger = logging.getLogger(__name__)

WHITESPACE_RE = re.compile(r"\s+")
BETWEEN_TAGS_RE = re.compile(r">\s+<")
XML_DECLARATION_RE = re.compile(r"^\s*<\?xml[^>]*\?>")

FA2_ROOT_RE = re.compile(r"<(?:[\w.-]+:)?Fa[\s/>]")
FA3_ROOT_RE = re.compile(r"<(?:[\w.-]+:)?Invoice[\s/>]")
FAKTURA_RE = re.compile(r"<(?:[\w.-]+:)?Faktura\b")
REFERENCE_RE = re.compile(r"<(?:[\w.-]+:)?ElementReferenceNumber\b")

REFERENCE_TAG = "ElementReferenceNumber"

# Nombre de etiqueta de FA(2) primero, nombre alternativo después
FA2_FIELD_TAGS: Dict[str, tuple] = {
    "invoice_number": ("P_2", "NrFaKorygowanej"),
    "issue_date": ("P_1", "DataWystawienia"),
    "seller_name": ("P_3A", "NazwaSprzedawcy"),
    "seller_tax_id": ("P_3B", "NIPSprzedawcy"),
    "buyer_name": ("P_4A", "NazwaNabywcy"),
    "buyer_tax_id": ("P_4B", "NIPNabywcy"),
    "total_amount": ("P_15", "WartoscBrutto"),
    "currency": ("KodWaluty",),
}

UNKNOWN = "UNKNOWN"
DEFAULT_CURRENCY = "PLN"


def normalize_document(xml_text: str) -> str:
    """Colapsa los espacios y elimina los que hay entre etiquetas."""
    normalized = WHITESPACE_RE.sub(" ", xml_text)
    normalized = BETWEEN_TAGS_RE.sub("><", normalized)
    return normalized.strip()


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class PackageParser:
    """
    Convierte un paquete ZIP de KSeF en documentos `InvoiceDocument`.

    La extracción busca etiquetas por nombre local en lugar de validar contra
    el esquema: el esquema de KSeF cambia y basta con obtener los campos
    principales tolerando pequeñas variaciones de formato.
    """
    DOCUMENT_EXTENSION = ".xml"

    def __init__(self, hasher: Callable[[bytes], str] = sha256_hex):
        self.hasher = hasher
        self._xml_parser = etree.XMLParser(recover=True, resolve_entities=False, no_network=True)

    def parse_package(self, package: bytes) -> List[InvoiceDocument]:
        """
        Recorre las entradas XML del paquete. Un documento que falla se registra
        y se omite; nunca interrumpe el resto del paquete.
        """
        try:
            archive = zipfile.ZipFile(io.BytesIO(package))
        except zipfile.BadZipFile as e:
            raise PackageParseError("Formato de paquete ZIP inválido") from e

        invoices: List[InvoiceDocument] = []
        with archive:
            for entry in archive.infolist():
                if entry.is_dir() or not entry.filename.lower().endswith(self.DOCUMENT_EXTENSION):
                    continue
                try:
                    document = self.parse_document(self._read_entry(archive, entry))
                except Exception as e:
                    logger.warning(f"No se pudo parsear el archivo {entry.filename}. Error: {e}")
                    continue

                if document is None:
                    logger.warning(f"El archivo {entry.filename} no contiene {REFERENCE_TAG}. Omitiendo.")
                    continue
                invoices.append(document)

        logger.info(f"Se extrajeron {len(invoices)} facturas del paquete.")
        return invoices

    def parse_document(self, xml_text: str) -> Optional[InvoiceDocument]:
        """
        Retorna None si el documento no tiene número de referencia de KSeF.
        Los campos secundarios ausentes se rellenan con valores por defecto.
        """
        root = self._parse_tree(xml_text)
        if root is None:
            return None

        reference = self._find_text(root, REFERENCE_TAG)
        if not reference:
            return None

        variant = self.detect_format(xml_text)
        if variant == DocumentVariant.FA3:
            fields = self._extract_fa3(root)
        elif variant == DocumentVariant.FA2:
            fields = self._extract_fa2(root)
        else:
            logger.warning(f"Formato de factura desconocido para {reference}; se usan las etiquetas de FA(2).")
            fields = self._extract_fa2(root)

        return InvoiceDocument(
            external_reference_number=reference,
            variant=variant,
            xml_content=xml_text,
            content_hash=self.compute_content_hash(xml_text),
            **fields,
        )

    def validate_document(self, xml_text: str) -> bool:
        return (
            "<?xml" in xml_text
            and FAKTURA_RE.search(xml_text) is not None
            and REFERENCE_RE.search(xml_text) is not None
        )

    def detect_format(self, xml_text: str) -> DocumentVariant:
        if FA2_ROOT_RE.search(xml_text) or "P_1" in xml_text:
            return DocumentVariant.FA2
        if FA3_ROOT_RE.search(xml_text) or "InvoiceHeader" in xml_text:
            return DocumentVariant.FA3
        return DocumentVariant.UNKNOWN

    def compute_content_hash(self, xml_text: str) -> str:
        return self.hasher(normalize_document(xml_text).encode("utf-8"))

    # --- Extractores por variante ---

    def _extract_fa2(self, root) -> dict:
        def first(field: str) -> Optional[str]:
            for tag in FA2_FIELD_TAGS[field]:
                value = self._find_text(root, tag)
                if value:
                    return value
            return None

        return {
            "invoice_number": first("invoice_number") or UNKNOWN,
            "issue_date": self._parse_date(first("issue_date")),
            "seller_name": first("seller_name") or UNKNOWN,
            "seller_tax_id": first("seller_tax_id") or UNKNOWN,
            "buyer_name": first("buyer_name") or UNKNOWN,
            "buyer_tax_id": first("buyer_tax_id"),
            "total_amount": self._parse_amount(first("total_amount")),
            "currency": first("currency") or DEFAULT_CURRENCY,
        }

    def _extract_fa3(self, root) -> dict:
        # TODO: implementar FA(3) cuando el Ministerio publique la especificación definitiva de KSeF 2.0
        logger.warning("El formato FA(3) todavía no está soportado; se usan las etiquetas de FA(2).")
        return self._extract_fa2(root)

    # --- Auxiliares ---

    def _read_entry(self, archive: zipfile.ZipFile, entry: zipfile.ZipInfo) -> str:
        data = archive.read(entry)
        try:
            return data.decode("utf-8-sig")
        except UnicodeDecodeError:
            return data.decode("iso-8859-1")

    def _parse_tree(self, xml_text: str):
        # lxml no acepta cadenas unicode con declaración de codificación
        text = XML_DECLARATION_RE.sub("", xml_text, count=1).strip()
        if not text:
            return None
        try:
            return etree.fromstring(text, self._xml_parser)
        except etree.XMLSyntaxError as e:
            raise DocumentParseError(f"XML ilegible: {e}") from e

    @staticmethod
    def _find_text(root, tag: str) -> Optional[str]:
        for element in root.iter(etree.Element):
            # Con recover=True un prefijo sin declarar queda dentro del nombre local
            localname = etree.QName(element).localname.split(":")[-1]
            if localname == tag and element.text and element.text.strip():
                return element.text.strip()
        return None

    @staticmethod
    def _parse_date(value: Optional[str]) -> date:
        if value:
            try:
                return datetime.strptime(value[:10], "%Y-%m-%d").date()
            except ValueError:
                logger.warning(f"Fecha de emisión inválida '{value}'; se usa la fecha actual.")
        return date.today()

    @staticmethod
    def _parse_amount(value: Optional[str]) -> float:
        if not value:
            return 0.0
        try:
            return float(value.replace(" ", "").replace(",", "."))
        except ValueError:
            return 0.0
