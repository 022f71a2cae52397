import os
import csv
from fpdf import FPDF

from config import get_settings


def _reports_dir(reports_dir=None):
    directory = reports_dir or get_settings().reports_dir
    os.makedirs(directory, exist_ok=True)
    return directory


def _safe_name(shop_domain):
    return shop_domain.replace('.', '_').replace('/', '_')


def _latin1(text):
    # Core PDF fonts only cover latin-1
    return str(text).encode('latin-1', 'replace').decode('latin-1')


def _summary_rows(analytics):
    stats = analytics['stats']
    rows = [
        ['Window', analytics['window']],
        ['Plan', analytics['shop']['plan']],
        ['Credits', f"{analytics['shop']['credits']}/{analytics['shop']['max_credits']}"],
        ['Products', analytics['products']['total']],
        ['Scanned products', analytics['products']['scanned']],
        ['Optimized products', analytics['products']['optimized']],
        ['Total scans', stats['total_scans']],
        ['Citation rate (%)', round(stats['citation_rate'], 1)],
        ['ChatGPT rate (%)', round(stats['chatgpt_rate'], 1)],
        ['Gemini rate (%)', round(stats['gemini_rate'], 1)],
        ['Average position', analytics['average_position'] if analytics['average_position'] is not None else '-'],
    ]
    return rows


def generate_csv_report(analytics, products, reports_dir=None):
    shop_domain = analytics['shop']['shop_domain']
    filename = os.path.join(_reports_dir(reports_dir), f"{_safe_name(shop_domain)}_{analytics['window']}_citations.csv")
    with open(filename, 'w', newline='', encoding='utf-8') as csvfile:
        writer = csv.writer(csvfile)
        writer.writerow(['Metric', 'Value'])
        for row in _summary_rows(analytics):
            writer.writerow(row)
        writer.writerow([])
        writer.writerow(['Competitor', 'Mentions'])
        for entry in analytics['competitors']:
            writer.writerow([entry['name'], entry['count']])
        writer.writerow([])
        writer.writerow(['Product', 'Vendor', 'Citation Rate', 'ChatGPT Rate', 'Gemini Rate', 'Scans', 'Optimized', 'Last Scan'])
        for product in products:
            writer.writerow([
                product['title'], product['vendor'] or '', product['citation_rate'],
                product['chatgpt_rate'], product['gemini_rate'], product['total_scans'],
                'yes' if product['is_optimized'] else 'no', product['last_scan_at'] or ''
            ])
    return filename


def generate_pdf_report(analytics, products, reports_dir=None):
    shop_domain = analytics['shop']['shop_domain']
    filename = os.path.join(_reports_dir(reports_dir), f"{_safe_name(shop_domain)}_{analytics['window']}_citations.pdf")
    pdf = FPDF()
    pdf.add_page()
    pdf.set_font('Arial', 'B', 16)
    pdf.cell(0, 10, _latin1(f'AI Citation Report: {shop_domain}'), ln=True)
    pdf.set_font('Arial', '', 12)
    pdf.cell(0, 10, 'Summary:', ln=True)
    for label, value in _summary_rows(analytics):
        pdf.cell(0, 8, _latin1(f'{label}: {value}'), ln=True)
    pdf.cell(0, 10, '', ln=True)
    pdf.cell(0, 10, 'Top competitors:', ln=True)
    for entry in analytics['competitors']:
        pdf.cell(0, 8, _latin1(f"{entry['name']}: {entry['count']} mention(s)"), ln=True)
    pdf.cell(0, 10, '', ln=True)
    pdf.cell(0, 10, 'Products:', ln=True)
    for product in products:
        pdf.multi_cell(0, 8, _latin1(
            f"{product['title']} - cited {product['citation_rate']}% "
            f"(ChatGPT {product['chatgpt_rate']}%, Gemini {product['gemini_rate']}%) "
            f"over {product['total_scans']} scan(s)"
        ))
        pdf.cell(0, 4, '', ln=True)
    pdf.output(filename)
    return filename
