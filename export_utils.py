"""
Data Export Utilities for SilverSeal
Provides Excel export of products and gram items with scan statistics

PERFORMANCE DESIGN:
- One joined query per export - no per-row database lookups
- Column widths are sized from the first 100 rows only

SAFETY:
- Admin-only access enforced in routes
"""
import io
import logging
from datetime import datetime
from typing import List, Dict, Any
from flask import Response, make_response
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill, Alignment
from openpyxl.utils import get_column_letter
from sqlalchemy import select

logger = logging.getLogger(__name__)

XLSX_MIMETYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'


class DataExporter:
    """Handles data export to Excel format"""

    @staticmethod
    def dict_to_workbook(data: List[Dict[str, Any]], sheet_name: str = "Data") -> bytes:
        """
        Render a list of dictionaries as an xlsx workbook.

        Args:
            data: Rows to export; keys of the first row become headers
            sheet_name: Name of the Excel sheet

        Returns:
            Workbook bytes
        """
        wb = Workbook()
        ws = wb.active
        ws.title = sheet_name

        if not data:
            ws['A1'] = "No data available for export"
        else:
            # Headers
            headers = list(data[0].keys())
            for col_idx, header in enumerate(headers, 1):
                cell = ws.cell(row=1, column=col_idx, value=header)
                cell.fill = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
                cell.font = Font(bold=True, color="FFFFFF")
                cell.alignment = Alignment(horizontal='center')

            # Data rows
            for row_idx, row_data in enumerate(data, 2):
                for col_idx, header in enumerate(headers, 1):
                    value = row_data.get(header, '')
                    if isinstance(value, datetime):
                        value = value.strftime('%Y-%m-%d %H:%M:%S')
                    ws.cell(row=row_idx, column=col_idx, value=value)

            # Auto-adjust column widths
            for col_idx, header in enumerate(headers, 1):
                max_length = len(str(header))
                for row_idx in range(2, min(len(data) + 2, 100)):  # Check first 100 rows
                    cell_value = ws.cell(row=row_idx, column=col_idx).value
                    if cell_value:
                        max_length = max(max_length, len(str(cell_value)))
                ws.column_dimensions[get_column_letter(col_idx)].width = min(max_length + 2, 50)

        output = io.BytesIO()
        wb.save(output)
        return output.getvalue()

    @staticmethod
    def dict_to_excel(data: List[Dict[str, Any]], filename: str, sheet_name: str = "Data") -> Response:
        """Convert list of dictionaries to an Excel download response"""
        response = make_response(DataExporter.dict_to_workbook(data, sheet_name))
        response.headers['Content-Type'] = XLSX_MIMETYPE
        response.headers['Content-Disposition'] = f'attachment; filename={filename}'
        return response


def _timestamped(name: str) -> str:
    return f"{name}_{datetime.utcnow().strftime('%Y%m%d_%H%M%S')}.xlsx"


class ProductExporter:
    """Export functionality for products"""

    @staticmethod
    def get_products_data(db) -> List[Dict]:
        from models import Product, QrRecord

        rows = db.session.execute(
            select(Product, QrRecord)
            .outerjoin(QrRecord, QrRecord.product_id == Product.id)
            .order_by(Product.created_at.desc(), Product.id.desc())
        ).all()

        result = []
        for product, record in rows:
            result.append({
                'Name': product.name,
                'Weight (g)': product.weight,
                'Serial Code': product.serial_code,
                'Price': product.price if product.price is not None else '',
                'Stock': product.stock if product.stock is not None else '',
                'Scan Count': record.scan_count if record else 0,
                'Last Scanned': record.last_scanned_at if record and record.last_scanned_at else 'Never',
                'QR Image URL': record.qr_image_url if record else '',
                'Created': product.created_at,
            })

        logger.info(f"Prepared product export with {len(result)} rows")
        return result

    @staticmethod
    def export_products_excel(db) -> Response:
        data = ProductExporter.get_products_data(db)
        return DataExporter.dict_to_excel(data, _timestamped('products'), 'Products')


class GramExporter:
    """Export functionality for gram batches and items"""

    @staticmethod
    def get_gram_items_data(db) -> List[Dict]:
        from models import GramProductBatch, GramProductItem

        rows = db.session.execute(
            select(GramProductItem, GramProductBatch)
            .join(GramProductBatch, GramProductItem.batch_id == GramProductBatch.id)
            .order_by(GramProductBatch.created_at.desc(), GramProductItem.serial_code.asc())
        ).all()

        result = []
        for item, batch in rows:
            result.append({
                'Batch': batch.name,
                'Weight (g)': batch.weight,
                'Weight Group': batch.weight_group,
                'Uniq Code': item.uniq_code,
                'Serial Code': item.serial_code,
                'Scan Count': item.scan_count,
                'Last Scanned': item.last_scanned_at if item.last_scanned_at else 'Never',
                'Created': item.created_at,
            })

        logger.info(f"Prepared gram export with {len(result)} rows")
        return result

    @staticmethod
    def export_gram_items_excel(db) -> Response:
        data = GramExporter.get_gram_items_data(db)
        return DataExporter.dict_to_excel(data, _timestamped('gram_products'), 'Gram Products')
