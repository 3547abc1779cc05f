"""
Document Generation Service - fills the contract / manual / warranty template
for an order and exports it as PDF.
Implements a pluggable document generation interface so the lifecycle
controller can swap backends (and tests can use fakes).

Key Features:
- One template per document kind, placeholders like {{company_name}}
- Contract template chosen by contract type (Grenke leasing vs B2B sale)
- Deterministic filenames: "{title} - {company} - {YYYY-MM-DD}.pdf"
- Safe to call repeatedly for the same order (regeneration is expected)
"""
import asyncio
import hashlib
import io
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import mm
from reportlab.platypus import (
    SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle, HRFlowable
)
from reportlab.lib.enums import TA_CENTER

from models import Order, ContractType, EquipmentCondition
from services.order_workflow import DocumentKind

logger = logging.getLogger(__name__)

COMPANY_NAME = os.getenv("COMPANY_NAME", "Fiordacqua")

# Brand colors
BRAND_BLUE = (0, 173, 239)   # #00ADEF
BRAND_SLATE = (30, 41, 59)   # #1E293B

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")


class DocumentGenerationError(Exception):
    """Template missing, unknown document kind or render failure."""
    pass


@dataclass
class GeneratedDocument:
    kind: DocumentKind
    filename: str
    content: bytes
    content_type: str = "application/pdf"
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.content).hexdigest()


class DocumentGenerator(ABC):
    """Abstract base class for document generation."""

    @abstractmethod
    async def generate(self, order: Order, kind: DocumentKind) -> GeneratedDocument:
        """
        Render the document of the given kind for an order.
        Raises DocumentGenerationError on failure.
        """
        pass


def contract_title(contract_type: ContractType) -> str:
    """Grenke orders are leasing agreements; everything else is a B2B sale."""
    if ContractType(contract_type) == ContractType.GRENKE:
        return "ACCORDO DI UTILIZZO"
    return "CONTRATTO B2B"


def document_title(order: Order, kind: DocumentKind) -> str:
    kind = DocumentKind(kind)
    if kind == DocumentKind.CONTRACT:
        return contract_title(order.contract_type)
    if kind == DocumentKind.MANUAL:
        return "MANUALE"
    return "GARANZIA_CE"


def generate_document_filename(order: Order, kind: DocumentKind, on: Optional[datetime] = None) -> str:
    """Filename pattern: {title} - {company} - {YYYY-MM-DD}.pdf"""
    stamp = (on or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
    company = re.sub(r'[\\/:*?"<>|]+', "_", order.company_name).strip()
    return f"{document_title(order, kind)} - {company} - {stamp}.pdf"


CONDITION_LABELS = {
    EquipmentCondition.NEW: "nuovo",
    EquipmentCondition.USED: "usato",
}


def prepare_replacements(order: Order) -> Dict[str, str]:
    """Template placeholder values for an order."""
    return {
        "created_on": order.created_on.strftime("%d/%m/%Y") if order.created_on else "",
        "contract_type": order.contract_type.value,
        "company_name": order.company_name or "",
        "legal_representative": order.legal_representative or "",
        "address": order.address or "",
        "postal_code": order.postal_code or "",
        "city": order.city or "",
        "tax_id": order.tax_id or "",
        "contact_email": order.contact_email or "",
        "model": order.model.value,
        "serial_number": order.serial_number or "",
        "condition": CONDITION_LABELS.get(order.condition, order.condition.value),
        "price": f"{order.price:.2f}" if order.price else "",
    }


def fill_template(text: str, replacements: Dict[str, str]) -> str:
    """Replace {{placeholder}} tokens; unknown placeholders become empty."""
    return PLACEHOLDER_PATTERN.sub(lambda m: replacements.get(m.group(1), ""), text)


# Section title -> paragraphs, per document kind
TEMPLATES: Dict[str, List[Tuple[str, List[str]]]] = {
    "contract_b2b": [
        ("PARTI", [
            "Il presente contratto di vendita è stipulato in data {{created_on}} tra "
            f"{COMPANY_NAME} e {{{{company_name}}}}, P.IVA {{{{tax_id}}}}, "
            "con sede legale in {{address}}, {{postal_code}} {{city}}, "
            "nella persona del legale rappresentante {{legal_representative}}.",
        ]),
        ("APPARECCHIATURA", [
            "Impianto di trattamento acqua modello {{model}}, matricola {{serial_number}}, "
            "condizione: {{condition}}.",
        ]),
        ("PREZZO", [
            "Il prezzo concordato è di EUR {{price}} IVA esclusa.",
        ]),
        ("ACCETTAZIONE", [
            "Il cliente accetta il contratto restituendone una copia firmata.",
        ]),
    ],
    "contract_grenke": [
        ("PARTI", [
            "Il presente accordo di utilizzo è stipulato in data {{created_on}} tra "
            f"{COMPANY_NAME} e {{{{company_name}}}}, P.IVA {{{{tax_id}}}}, "
            "con sede legale in {{address}}, {{postal_code}} {{city}}, "
            "nella persona del legale rappresentante {{legal_representative}}.",
        ]),
        ("APPARECCHIATURA", [
            "Impianto di trattamento acqua modello {{model}}, matricola {{serial_number}}, "
            "finanziato tramite contratto di locazione GRENKE.",
        ]),
        ("CORRISPETTIVO", [
            "Valore di riferimento dell'apparecchiatura: EUR {{price}}.",
        ]),
        ("ACCETTAZIONE", [
            "Il cliente accetta l'accordo restituendone una copia firmata.",
        ]),
    ],
    "manual": [
        ("MANUALE D'USO", [
            "Manuale d'uso dell'impianto {{model}}, matricola {{serial_number}}, "
            "installato presso {{company_name}}, {{address}}, {{postal_code}} {{city}}.",
        ]),
        ("PRESA VISIONE", [
            "{{legal_representative}} dichiara di aver ricevuto e letto il presente manuale "
            "e lo controfirma per conto di {{company_name}}.",
        ]),
    ],
    "warranty": [
        ("CERTIFICATO DI GARANZIA CE", [
            f"{COMPANY_NAME} certifica che l'impianto {{{{model}}}}, matricola "
            "{{serial_number}}, consegnato a {{company_name}} (P.IVA {{tax_id}}) è conforme "
            "alle direttive CE applicabili.",
        ]),
        ("COPERTURA", [
            "La garanzia copre i difetti di fabbricazione dalla data di rilascio, "
            "a condizione che siano state seguite le indicazioni del manuale d'uso.",
        ]),
    ],
}

SIGNATURE_LINE = "Firma: ______________________________"


def customer_summary(order: Order) -> List[List[str]]:
    """Label/value rows printed under the document title."""
    return [
        ["Ragione sociale:", order.company_name],
        ["Legale rappresentante:", order.legal_representative or "-"],
        ["P.IVA:", order.tax_id or "-"],
        ["Indirizzo:", f"{order.address} {order.postal_code} {order.city}".strip() or "-"],
        ["Modello / Matricola:", f"{order.model.value} / {order.serial_number or '-'}"],
    ]


def template_key(order: Order, kind: DocumentKind) -> str:
    kind = DocumentKind(kind)
    if kind == DocumentKind.CONTRACT:
        return "contract_grenke" if order.contract_type == ContractType.GRENKE else "contract_b2b"
    return kind.value


class PdfDocumentGenerator(DocumentGenerator):
    """
    Production generator using reportlab.
    Rendering is CPU-bound, so it runs in a worker thread.
    """

    def __init__(self, templates: Optional[Dict[str, List[Tuple[str, List[str]]]]] = None):
        self.templates = templates if templates is not None else TEMPLATES

    async def generate(self, order: Order, kind: DocumentKind) -> GeneratedDocument:
        try:
            kind = DocumentKind(kind)
        except ValueError as e:
            raise DocumentGenerationError(f"Unknown document kind: {kind}") from e

        key = template_key(order, kind)
        sections = self.templates.get(key)
        if not sections:
            raise DocumentGenerationError(f"Template {key} not configured")

        now = datetime.now(timezone.utc)
        filename = generate_document_filename(order, kind, now)
        try:
            content = await asyncio.to_thread(self._render_pdf, order, kind, sections, now)
        except Exception as e:
            logger.error(f"PDF render failed for order {order.id} ({kind.value}): {e}")
            raise DocumentGenerationError(f"Failed to render {kind.value}: {e}") from e

        logger.info(f"Generated {filename} for order {order.id}")
        return GeneratedDocument(kind=kind, filename=filename, content=content, generated_at=now)

    def _render_pdf(
        self,
        order: Order,
        kind: DocumentKind,
        sections: List[Tuple[str, List[str]]],
        generated_at: datetime,
    ) -> bytes:
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=20*mm,
            leftMargin=20*mm,
            topMargin=25*mm,
            bottomMargin=20*mm,
            title=document_title(order, kind),
            author=COMPANY_NAME,
        )

        story = []
        styles = getSampleStyleSheet()

        title_style = ParagraphStyle(
            'DocTitle',
            parent=styles['Heading1'],
            fontSize=20,
            textColor=colors.Color(*[c/255 for c in BRAND_SLATE]),
            alignment=TA_CENTER,
            spaceAfter=12,
        )
        section_style = ParagraphStyle(
            'Section',
            parent=styles['Heading2'],
            fontSize=13,
            textColor=colors.Color(*[c/255 for c in BRAND_BLUE]),
            spaceBefore=12,
            spaceAfter=6,
        )
        normal_style = styles['Normal']

        story.append(Paragraph(escape(COMPANY_NAME.upper()), title_style))
        story.append(Paragraph(escape(document_title(order, kind)), title_style))
        story.append(HRFlowable(width="100%", thickness=1, color=colors.gray))
        story.append(Spacer(1, 12))

        # Customer summary
        customer_table = Table(customer_summary(order), colWidths=[130, 320])
        customer_table.setStyle(TableStyle([
            ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 0), (-1, -1), 10),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 6),
        ]))
        story.append(customer_table)
        story.append(Spacer(1, 12))

        replacements = {k: escape(v) for k, v in prepare_replacements(order).items()}
        for heading, paragraphs in sections:
            story.append(Paragraph(escape(heading), section_style))
            for text in paragraphs:
                story.append(Paragraph(fill_template(text, replacements), normal_style))
                story.append(Spacer(1, 6))

        # Signature block
        story.append(Spacer(1, 36))
        story.append(Paragraph(SIGNATURE_LINE, normal_style))

        footer_style = ParagraphStyle(
            'Footer',
            parent=styles['Normal'],
            fontSize=8,
            textColor=colors.gray,
            alignment=TA_CENTER,
        )
        story.append(Spacer(1, 24))
        story.append(HRFlowable(width="100%", thickness=1, color=colors.gray))
        story.append(Paragraph(
            f"{escape(COMPANY_NAME)} | Ordine {order.id} | "
            f"{generated_at.strftime('%d/%m/%Y %H:%M UTC')}",
            footer_style
        ))

        doc.build(story)
        return buffer.getvalue()


document_generator = PdfDocumentGenerator()
