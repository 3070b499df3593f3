"""
Printable bulletin as a PDF, with the signature and public verification
details printed in the footer.
"""
import logging

from fpdf import FPDF
from fpdf.enums import XPos, YPos

from . import grading

logger = logging.getLogger(__name__)

COLUMNS = (
    ('Matière', 60),
    ('Coef.', 15),
    ('CC', 20),
    ('Examen', 20),
    ('Moyenne', 22),
    ('Appréciation', 43),
)


def _latin1(value):
    # Core PDF fonts only cover latin-1
    return str(value).encode('latin-1', 'replace').decode('latin-1')


def _mark(value):
    return '-' if value is None else f'{value:g}'


def verification_lines(signature=None, verification=None, base_url=''):
    if signature is None:
        return ['Document non signé - sans valeur officielle']

    lines = [
        f'Signé électroniquement par {signature.signatory_name} ({signature.signatory_title}) '
        f"le {signature.signed_at.strftime('%d/%m/%Y %H:%M')}",
        f'Empreinte du document (SHA-256): {signature.document_hash}',
        f'Code de vérification: {signature.verification_code}',
    ]
    if verification is not None:
        lines.append(f'Code court: {verification.short_code} - '
                     f'{base_url}/api/bulletins/verify?code={verification.short_code}')
    return lines


def render_bulletin_pdf(bulletin, signature=None, verification=None, base_url=''):
    """Render one bulletin and return the PDF bytes"""
    student = bulletin.student
    school_name = bulletin.school.name if bulletin.school else ''

    pdf = FPDF()
    pdf.set_title(_latin1(f'Bulletin {bulletin.term} {bulletin.academic_year}'))
    pdf.add_page()

    pdf.set_font('Helvetica', 'B', 16)
    pdf.cell(0, 10, _latin1(school_name), new_x=XPos.LMARGIN, new_y=YPos.NEXT, align='C')
    pdf.set_font('Helvetica', 'B', 13)
    pdf.cell(0, 8, _latin1(f'BULLETIN DE NOTES - {bulletin.term} - {bulletin.academic_year}'),
             new_x=XPos.LMARGIN, new_y=YPos.NEXT, align='C')
    pdf.ln(4)

    pdf.set_font('Helvetica', '', 10)
    pdf.cell(0, 6, _latin1(f"Élève: {student.full_name if student else '-'}"), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.cell(0, 6, _latin1(f"Matricule: {(student.matricule if student else None) or '-'}"),
             new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.cell(0, 6, _latin1(f"Classe: {bulletin.classroom.name if bulletin.classroom else '-'}"),
             new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.ln(4)

    pdf.set_font('Helvetica', 'B', 9)
    for header, width in COLUMNS:
        pdf.cell(width, 7, _latin1(header), border=1, align='C')
    pdf.ln()

    pdf.set_font('Helvetica', '', 9)
    details = bulletin.subject_details or {}
    for code in sorted(details, key=lambda c: details[c].get('name') or c):
        subject = details[code]
        average = subject.get('average')
        row = (
            subject.get('name') or code,
            _mark(subject.get('coefficient')),
            _mark(subject.get('cc')),
            _mark(subject.get('exam')),
            _mark(average),
            subject.get('appreciation') or grading.appreciation(average),
        )
        for (_, width), value in zip(COLUMNS, row):
            pdf.cell(width, 6, _latin1(value), border=1)
        pdf.ln()
    pdf.ln(4)

    rank = f'{bulletin.class_rank}/{bulletin.class_size}' if bulletin.class_rank else '-'
    pdf.set_font('Helvetica', 'B', 11)
    pdf.cell(0, 7, _latin1(f'Moyenne générale: {_mark(bulletin.term_average)}/20'),
             new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.cell(0, 7, _latin1(f'Rang: {rank}'), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.cell(0, 7, _latin1(f"Appréciation: {bulletin.appreciation or grading.appreciation(bulletin.term_average)}"),
             new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.ln(6)

    pdf.set_font('Helvetica', 'I', 8)
    for line in verification_lines(signature, verification, base_url):
        pdf.multi_cell(0, 5, _latin1(line), new_x=XPos.LMARGIN, new_y=YPos.NEXT)

    logger.info("[BULLETINS] Rendered PDF for bulletin %s", bulletin.id)
    return bytes(pdf.output())
