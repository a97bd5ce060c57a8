"""File parsing utilities that convert question documents into block
definitions for a study.

Supported input types: JSON, CSV, TXT, PDF and DOCX. Parsers return a
list of dictionaries with keys `question`, `options` (possibly empty)
and `block_type` (an explicit type from the file, or None so the caller
can infer one).
"""

import io
import json
import csv
import re
import zipfile
from typing import List, Dict, Optional
import pdfplumber
import docx
from docx.opc.exceptions import PackageNotFoundError
from pdfminer.pdfparser import PDFSyntaxError
from pdfplumber.utils.exceptions import PdfminerException

_SECTION_BREAK = re.compile(r'\n[ \t]*\n')


def parse_file_to_blocks(file_bytes: bytes, filename: str) -> List[Dict]:
    """Dispatch to the appropriate parser based on file extension."""
    name = filename.lower()
    if name.endswith('.json'):
        return parse_json(file_bytes)
    if name.endswith('.csv'):
        return parse_csv(file_bytes)
    if name.endswith('.txt'):
        return parse_txt(file_bytes)
    if name.endswith('.pdf'):
        return parse_pdf(file_bytes)
    if name.endswith('.docx'):
        return parse_docx(file_bytes)
    raise ValueError('Unsupported file type')


def parse_json(b: bytes):
    """Parse a JSON array (or `{"blocks": [...]}`) of question objects."""
    try:
        data = json.loads(b.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f'invalid JSON: {e}')
    if isinstance(data, dict):
        data = data.get('blocks') or data.get('questions') or []
    if not isinstance(data, list):
        raise ValueError('JSON import must be a list of questions')
    return [normalize_item(item) if isinstance(item, dict) else item for item in data]


def parse_csv(b: bytes):
    """Parse a CSV where a single column contains pipe-separated options.

    Expected columns: `question` or `question_text`, optional `options`
    (pipe separated, `answers` is accepted too) and optional `type`.
    """
    out = []
    sio = io.StringIO(b.decode('utf-8-sig'))
    reader = csv.DictReader(sio)
    for row in reader:
        options_raw = row.get('options') or row.get('answers') or ''
        out.append({
            'question': str(row.get('question') or row.get('question_text') or '').strip(),
            'options': [p.strip() for p in options_raw.split('|') if p.strip()],
            'block_type': (row.get('type') or row.get('block_type') or '').strip() or None,
        })
    return out


def parse_txt(b: bytes):
    """Parse plaintext where questions are separated by blank lines and
    every following line of a section is an option.
    """
    return _parse_sections(split_sections(b.decode('utf-8-sig')))


def parse_pdf(b: bytes):
    """Extract text from PDF pages and split it into question sections."""
    text_parts = []
    try:
        with pdfplumber.open(io.BytesIO(b)) as pdf:
            for page in pdf.pages:
                text_parts.append(page.extract_text() or '')
    except (PdfminerException, PDFSyntaxError) as e:
        raise ValueError('could not read pdf file') from e
    return _parse_sections(split_sections('\n'.join(text_parts)))


def parse_docx(b: bytes):
    """Parse a DOCX document into question sections.

    Paragraph groups separated by empty paragraphs are one question; a
    group containing `|` is read as `question|option1|option2...`.
    """
    try:
        doc = docx.Document(io.BytesIO(b))
    except (zipfile.BadZipFile, PackageNotFoundError, KeyError) as e:
        raise ValueError('could not read docx file') from e
    sections = []
    current = []
    for p in doc.paragraphs:
        text = (p.text or '').strip()
        if not text:
            if current:
                sections.append('\n'.join(current))
                current = []
            continue
        current.append(text)
    if current:
        sections.append('\n'.join(current))
    return _parse_sections(sections)


def split_sections(text: str) -> List[str]:
    """Split on blank lines, whatever the line endings."""
    text = text.replace('\r\n', '\n').replace('\r', '\n')
    return _SECTION_BREAK.split(text)


def _parse_sections(sections: List[str]) -> List[Dict]:
    out = []
    for sec in sections:
        sec = sec.strip()
        if not sec:
            continue
        if '|' in sec:
            parts = [x.strip() for x in sec.split('|') if x.strip()]
        else:
            parts = [l.strip() for l in sec.splitlines() if l.strip()]
        if not parts:
            continue
        out.append({
            'question': parts[0],
            'options': [_strip_bullet(p) for p in parts[1:]],
            'block_type': None,
        })
    return out


def normalize_item(item: dict) -> dict:
    """Map alternative keys of an imported question to the canonical shape."""
    raw_options = item.get('options') or item.get('answers') or item.get('possible_answers') or []
    options = []
    for opt in raw_options:
        if isinstance(opt, dict):
            opt = opt.get('answer_text') or opt.get('text') or ''
        if isinstance(opt, str) and opt.strip():
            options.append(opt.strip())
    return {
        'question': str(item.get('question') or item.get('question_text') or '').strip(),
        'options': options,
        'block_type': item.get('type') or item.get('block_type') or None,
    }


def _strip_bullet(text: str) -> str:
    """Drop a leading list marker such as '-', '*', 'a)' or '1.'."""
    cleaned = text.strip()
    if cleaned[:1] in ('-', '*', '•'):
        return cleaned[1:].strip()
    head = cleaned[:3]
    for sep in (')', '.'):
        idx = head.find(sep)
        marker = head[:idx] if idx > 0 else ''
        is_marker = marker.isdigit() or (len(marker) == 1 and marker.isalpha())
        if is_marker and len(cleaned) > idx + 1 and cleaned[idx + 1] == ' ':
            return cleaned[idx + 1:].strip()
    return cleaned


def infer_block_type(item: dict) -> Optional[str]:
    """Explicit type wins; otherwise two or more options make a multiple choice."""
    if item.get('block_type'):
        return item['block_type']
    return 'multiple_choice' if len(item.get('options') or []) >= 2 else 'open_question'
