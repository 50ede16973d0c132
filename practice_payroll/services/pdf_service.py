"""
Practice Payroll - PDF Document Service

Renders payslips and employee tax certificates with ReportLab.

Documents are built from the read-only data contracts (PayslipData,
TaxCertificate); rendering never touches the database.
"""

import io
import logging
from datetime import datetime
from typing import List, Optional, Sequence

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from reportlab.platypus import (
    SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer, HRFlowable
)

from practice_payroll.config import settings
from practice_payroll.schemas.payslip import PayslipData
from practice_payroll.schemas.reports import TaxCertificate
from practice_payroll.utils.money import format_rand

logger = logging.getLogger(__name__)


HEADER_BACKGROUND = colors.HexColor("#2d3748")
TOTAL_BACKGROUND = colors.HexColor("#e2e8f0")


class PayrollPDFService:
    """Service for generating payroll PDF documents."""

    def __init__(self, company_name: Optional[str] = None):
        self.company_name = company_name or settings.company_name
        self.styles = getSampleStyleSheet()
        self._setup_custom_styles()

    def _setup_custom_styles(self):
        """Setup custom paragraph styles for payroll documents."""
        self.styles.add(ParagraphStyle(
            name='DocumentTitle',
            parent=self.styles['Heading1'],
            fontSize=16,
            alignment=TA_CENTER,
            spaceAfter=12,
            textColor=colors.HexColor("#1a365d")
        ))
        self.styles.add(ParagraphStyle(
            name='DocumentSubtitle',
            parent=self.styles['Heading2'],
            fontSize=11,
            alignment=TA_CENTER,
            spaceAfter=8,
            textColor=colors.HexColor("#4a5568")
        ))
        self.styles.add(ParagraphStyle(
            name='SectionHeader',
            parent=self.styles['Heading3'],
            fontSize=11,
            fontName='Helvetica-Bold',
            spaceBefore=12,
            spaceAfter=4,
            textColor=colors.HexColor("#2d3748")
        ))
        self.styles.add(ParagraphStyle(
            name='Footer',
            parent=self.styles['Normal'],
            fontSize=8,
            alignment=TA_CENTER,
            textColor=colors.gray
        ))
        self.styles.add(ParagraphStyle(
            name='Notice',
            parent=self.styles['Normal'],
            fontSize=9,
            alignment=TA_RIGHT,
            textColor=colors.red
        ))

    def _new_document(self, buffer: io.BytesIO, title: str) -> SimpleDocTemplate:
        return SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=0.6*inch,
            leftMargin=0.6*inch,
            topMargin=0.6*inch,
            bottomMargin=0.6*inch,
            title=title,
            author=self.company_name,
        )

    def _details_table(self, rows: Sequence[Sequence[str]]) -> Table:
        """Two-column label/value block."""
        table = Table([list(r) for r in rows], colWidths=[2.0*inch, 4.8*inch])
        table.setStyle(TableStyle([
            ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 0), (-1, -1), 9),
            ('TOPPADDING', (0, 0), (-1, -1), 2),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 2),
        ]))
        return table

    def _amounts_table(
        self,
        header: Sequence[str],
        rows: Sequence[Sequence[str]],
        total: Optional[Sequence[str]] = None,
    ) -> Table:
        data = [list(header)] + [list(r) for r in rows]
        if total:
            data.append(list(total))

        table = Table(data, colWidths=[4.3*inch, 2.5*inch])
        style = [
            ('BACKGROUND', (0, 0), (-1, 0), HEADER_BACKGROUND),
            ('TEXTCOLOR', (0, 0), (-1, 0), colors.white),
            ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 0), (-1, -1), 9),
            ('ALIGN', (1, 0), (1, -1), 'RIGHT'),
            ('GRID', (0, 0), (-1, -1), 0.5, colors.gray),
            ('TOPPADDING', (0, 0), (-1, -1), 4),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 4),
        ]
        if total:
            style += [
                ('BACKGROUND', (0, -1), (-1, -1), TOTAL_BACKGROUND),
                ('FONTNAME', (0, -1), (-1, -1), 'Helvetica-Bold'),
            ]
        table.setStyle(TableStyle(style))
        return table

    def _footer(self, elements: List) -> None:
        elements.append(Spacer(1, 24))
        elements.append(HRFlowable(width="100%", color=colors.gray))
        elements.append(Paragraph(
            f"Generated by {self.company_name} on {datetime.now().strftime('%Y-%m-%d %H:%M')}",
            self.styles['Footer']
        ))

    # ===========================================
    # PAYSLIP
    # ===========================================

    def render_payslip(self, payslip: PayslipData) -> bytes:
        """Render a payslip; blocked payslips still render, marked as withheld."""
        buffer = io.BytesIO()
        doc = self._new_document(buffer, f"Payslip {payslip.employee_number} {payslip.period_label}")
        elements = []

        elements.append(Paragraph(payslip.practice_name, self.styles['DocumentTitle']))
        elements.append(Paragraph(
            f"Payslip for {payslip.period_label} (tax year {payslip.tax_year})",
            self.styles['DocumentSubtitle']
        ))
        if payslip.delivery_blocked:
            elements.append(Paragraph(
                "Delivery withheld: banking details incomplete",
                self.styles['Notice']
            ))
        elements.append(Spacer(1, 8))

        elements.append(self._details_table([
            ["Employee", payslip.employee_name],
            ["Employee number", payslip.employee_number],
            ["Tax number", payslip.tax_number or "-"],
            ["Pay date", payslip.payment_date.isoformat() if payslip.payment_date else "-"],
            ["Bank account", payslip.bank_account_masked or "-"],
        ]))

        elements.append(Paragraph("Earnings", self.styles['SectionHeader']))
        elements.append(self._amounts_table(
            ["Description", "Amount"],
            [[line.label, format_rand(line.amount)] for line in payslip.earnings],
            ["Total earnings", format_rand(payslip.total_earnings)],
        ))

        elements.append(Paragraph("Deductions", self.styles['SectionHeader']))
        elements.append(self._amounts_table(
            ["Description", "Amount"],
            [[line.label, format_rand(line.amount)] for line in payslip.deductions],
            ["Total deductions", format_rand(payslip.total_deductions)],
        ))

        elements.append(Spacer(1, 8))
        elements.append(self._amounts_table(
            ["", ""],
            [],
            ["NET PAY", format_rand(payslip.net_pay)],
        ))

        if payslip.employer_contributions:
            elements.append(Paragraph("Employer contributions", self.styles['SectionHeader']))
            elements.append(self._amounts_table(
                ["Description", "Amount"],
                [[line.label, format_rand(line.amount)] for line in payslip.employer_contributions],
            ))

        elements.append(Paragraph("Year to date", self.styles['SectionHeader']))
        ytd = payslip.ytd
        elements.append(self._amounts_table(
            ["Description", "Amount"],
            [
                ["Gross remuneration", format_rand(ytd.ytd_gross)],
                ["PAYE", format_rand(ytd.ytd_paye)],
                ["UIF", format_rand(ytd.ytd_uif_employee)],
                ["Net pay", format_rand(ytd.ytd_net)],
            ],
        ))

        self._footer(elements)
        doc.build(elements)
        return buffer.getvalue()

    # ===========================================
    # TAX CERTIFICATE
    # ===========================================

    def render_certificate(self, certificate: TaxCertificate) -> bytes:
        buffer = io.BytesIO()
        doc = self._new_document(buffer, f"Tax certificate {certificate.certificate_number}")
        elements = []

        elements.append(Paragraph("Employee Tax Certificate", self.styles['DocumentTitle']))
        elements.append(Paragraph(
            f"Tax year {certificate.tax_year} "
            f"({certificate.period_start.isoformat()} to {certificate.period_end.isoformat()})",
            self.styles['DocumentSubtitle']
        ))
        elements.append(Spacer(1, 8))

        elements.append(Paragraph("Employer", self.styles['SectionHeader']))
        elements.append(self._details_table([
            ["Name", certificate.practice_name],
            ["PAYE reference", certificate.paye_reference or "-"],
        ]))

        elements.append(Paragraph("Employee", self.styles['SectionHeader']))
        elements.append(self._details_table([
            ["Certificate number", certificate.certificate_number],
            ["Name", certificate.full_name],
            ["Employee number", certificate.employee_number],
            ["Identity number", certificate.id_number or "-"],
            ["Tax number", certificate.tax_number or "-"],
            ["Date of birth", certificate.date_of_birth.isoformat() if certificate.date_of_birth else "-"],
            ["Periods employed", str(certificate.periods_employed)],
        ]))

        elements.append(Paragraph("Income and deductions", self.styles['SectionHeader']))
        elements.append(self._amounts_table(
            ["Description", "Amount"],
            [
                ["Total income", format_rand(certificate.total_income)],
                ["Taxable fringe benefits", format_rand(certificate.fringe_benefits)],
                ["Taxable income", format_rand(certificate.taxable_income)],
                ["Retirement fund contributions", format_rand(certificate.retirement_contributions)],
                ["Medical scheme contributions", format_rand(certificate.medical_aid_contributions)],
                ["Medical scheme fees tax credit", format_rand(certificate.medical_tax_credits)],
                ["PAYE", format_rand(certificate.total_paye)],
                ["UIF", format_rand(certificate.total_uif)],
                ["Total deductions", format_rand(certificate.total_deductions)],
            ],
            ["Net pay", format_rand(certificate.net_pay)],
        ))

        self._footer(elements)
        doc.build(elements)

        logger.info(f"Rendered tax certificate {certificate.certificate_number}")
        return buffer.getvalue()
