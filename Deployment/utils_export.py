import os
from datetime import date
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Image, Table, TableStyle
from reportlab.lib.pagesizes import portrait, A4
from reportlab.lib.units import cm
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.colors import black, lightgrey
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.cidfonts import UnicodeCIDFont
from PIL import Image as PILImage
from utils_notation import AnalysisResult, apply_jaw_override

CJK_FONT = 'STSong-Light'
pdfmetrics.registerFont(UnicodeCIDFont(CJK_FONT))


def export_description(result: AnalysisResult, is_corrected: bool = False, is_lower: bool = False) -> str:
    """
    Description written to the export. Corrected results are taken as-is; otherwise
    the user's jaw toggle still applies to findings recorded without a horizontal line.
    """
    if not is_corrected:
        result = apply_jaw_override(result, is_lower)
    return result.combined_description.strip()

def export_filename(day: date = None) -> str:
    day = day or date.today()
    return f"牙位识别结果_{day.isoformat()}.pdf"

def _thumbnail(path: str, width: float, styles):
    if not path or not os.path.exists(path):
        return Paragraph("图片缺失", styles['CJKBody'])
    with PILImage.open(path) as pil_img:
        img_w, img_h = pil_img.size
    aspect = img_h / float(img_w)
    height = min(width * aspect, 3.5 * cm)
    return Image(path, width=height / aspect, height=height)

def create_results_pdf(rows: list, pdf_save_path: str) -> bool:
    """
    One table row per analysed image: thumbnail, file name, description.
    `rows` holds dicts with 'image_path', 'image_name' and 'description'.
    """
    try:
        doc = SimpleDocTemplate(pdf_save_path, pagesize=portrait(A4),
                                leftMargin=1.5*cm, rightMargin=1.5*cm,
                                topMargin=1.5*cm, bottomMargin=1.5*cm)
        styles = getSampleStyleSheet()
        styles.add(ParagraphStyle(name='CJKBody', parent=styles['BodyText'],
                                  fontName=CJK_FONT, fontSize=10, leading=14))
        styles.add(ParagraphStyle(name='CJKHeading', parent=styles['Heading1'],
                                  fontName=CJK_FONT, fontSize=14, leading=18))
        styles.add(ParagraphStyle(name='CJKHeader', parent=styles['CJKBody'], alignment=1))

        col_widths = [4.5*cm, 5*cm, 8.5*cm]
        table_data = [[
            Paragraph("原图片", styles['CJKHeader']),
            Paragraph("原图片名称", styles['CJKHeader']),
            Paragraph("牙位描述", styles['CJKHeader']),
        ]]
        for row in rows:
            table_data.append([
                _thumbnail(row.get('image_path'), col_widths[0] - 0.4*cm, styles),
                Paragraph(row.get('image_name', ''), styles['CJKBody']),
                Paragraph(row.get('description', ''), styles['CJKBody']),
            ])

        table = Table(table_data, colWidths=col_widths, repeatRows=1)
        table.setStyle(TableStyle([
            ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
            ('GRID', (0, 0), (-1, -1), 0.5, black),
            ('BACKGROUND', (0, 0), (-1, 0), lightgrey),
        ]))

        story = [Paragraph("牙位识别结果", styles['CJKHeading']), Spacer(1, 0.5 * cm), table]
        doc.build(story)
        return True
    except Exception as e:
        print(f"\n  [Error] Failed to create PDF for {os.path.basename(pdf_save_path)}: {e}")
        return False
