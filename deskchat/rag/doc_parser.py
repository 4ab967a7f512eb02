"""Document parsing: heterogeneous files to plain UTF-8 text.

Handles:
- PDF text-layer extraction (pypdf)
- DOCX paragraph text (python-docx)
- XLSX / CSV / TSV as row-major delimited text
- Markdown (YAML frontmatter stripped), HTML (tags stripped), plain text and source code
"""
import csv
import hashlib
import io
import re
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple
import structlog
import yaml

from deskchat.errors import CorruptFile, EncodingError, ParseError, UnsupportedFormat

logger = structlog.get_logger()


# Lossy decoding is rejected when more than this share of characters is U+FFFD
MAX_REPLACEMENT_RATIO = 0.3

CODE_EXTENSIONS = {
    "py", "js", "ts", "jsx", "tsx", "rs", "go", "java", "kt", "c", "h", "cpp",
    "hpp", "cs", "rb", "php", "swift", "sh", "sql", "css", "scss", "vue",
    "json", "yaml", "yml", "toml", "ini", "xml",
}

FORMATS: Dict[str, str] = {
    "pdf": "pdf",
    "docx": "docx",
    "xlsx": "xlsx",
    "csv": "csv",
    "tsv": "csv",
    "md": "markdown",
    "markdown": "markdown",
    "html": "html",
    "htm": "html",
    "txt": "text",
    "text": "text",
    "log": "text",
    "rst": "text",
    **{ext: "code" for ext in CODE_EXTENSIONS},
}


@dataclass
class ParsedDocument:
    """Extracted text plus file facts needed for the Document row."""

    path: Path
    file_type: str
    text: str

    @property
    def is_near_empty(self) -> bool:
        """True for image-only PDFs and similar: almost no extractable text."""
        return len(re.sub(r"\s+", "", self.text)) < 20


def detect_file_type(file_path: Path, declared_type: Optional[str] = None) -> str:
    """Normalize the declared type or file extension (lowercase, no dot).

    Raises:
        UnsupportedFormat: If no parser handles the type
    """
    file_type = (declared_type or Path(file_path).suffix).lower().lstrip(".")
    if file_type not in FORMATS:
        raise UnsupportedFormat(f"Unsupported format: {file_type or '(none)'}")
    return file_type


def compute_file_hash(file_path: Path) -> str:
    """SHA-256 of the file bytes, used to spot duplicate imports."""
    digest = hashlib.sha256()
    with open(file_path, "rb") as f:
        for block in iter(lambda: f.read(1 << 20), b""):
            digest.update(block)
    return digest.hexdigest()


def decode_text(raw: bytes, source: str = "") -> str:
    """Decode bytes as UTF-8, falling back to lossy decoding.

    Raises:
        EncodingError: If even lossy decoding is mostly garbage
    """
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        text = raw.decode("utf-8", errors="replace")
        replaced = text.count("\ufffd")
        ratio = replaced / max(len(text), 1)
        if ratio > MAX_REPLACEMENT_RATIO:
            logger.error("text_decode_failed", path=source, replacement_ratio=round(ratio, 3))
            raise EncodingError(f"Cannot decode {source or 'file'} as UTF-8: {e}") from e

        logger.warning("text_decoded_lossily", path=source, replaced_chars=replaced)
        return text


def clean_text(text: str) -> str:
    """Normalize line endings and whitespace while keeping paragraph breaks."""
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\x00", "")
    lines = [line.rstrip() for line in text.split("\n")]
    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


class MarkdownParser:
    """Parser for markdown documents with frontmatter support."""

    # Regex for YAML frontmatter (must be at start of file)
    FRONTMATTER_PATTERN = re.compile(
        r"^---\s*\n(.*?)\n---\s*\n", re.DOTALL | re.MULTILINE
    )

    def parse_text(self, content: str) -> str:
        """Return the markdown body without its frontmatter block."""
        frontmatter, body = self._parse_frontmatter(content)
        title = frontmatter.get("title") if isinstance(frontmatter, dict) else None
        if title and not body.lstrip().startswith("#"):
            return f"{title}\n\n{body}"
        return body

    def _parse_frontmatter(self, content: str) -> Tuple[dict, str]:
        match = self.FRONTMATTER_PATTERN.match(content)
        if not match:
            return {}, content

        try:
            frontmatter = yaml.safe_load(match.group(1)) or {}
        except yaml.YAMLError as e:
            logger.warning("frontmatter_parse_error", error=str(e))
            frontmatter = {}

        return frontmatter, content[match.end() :]


class DocumentParser:
    """Dispatches a file to the extractor for its format."""

    def __init__(self):
        self.markdown = MarkdownParser()

    def parse(self, file_path: Path, declared_type: Optional[str] = None) -> ParsedDocument:
        """Extract plain text from a file. Never modifies the file.

        Args:
            file_path: Path to the file
            declared_type: Extension reported by the file picker, if any

        Returns:
            ParsedDocument with cleaned text

        Raises:
            UnsupportedFormat: Unknown extension
            CorruptFile: Missing file or container that can't be opened
            EncodingError: Text that can't be decoded
        """
        file_path = Path(file_path)
        file_type = detect_file_type(file_path, declared_type)

        if not file_path.is_file():
            raise CorruptFile(f"File not found: {file_path}")

        extractor = getattr(self, f"_parse_{FORMATS[file_type]}")
        try:
            text = extractor(file_path, file_type)
        except ParseError:
            raise
        except OSError as e:
            raise CorruptFile(f"Cannot read {file_path.name}: {e}") from e

        text = clean_text(text)
        parsed = ParsedDocument(path=file_path, file_type=file_type, text=text)

        if parsed.is_near_empty:
            logger.warning("document_text_near_empty", path=str(file_path), file_type=file_type)

        logger.info(
            "document_parsed",
            path=str(file_path),
            file_type=file_type,
            content_length=len(text),
        )
        return parsed

    def _read_text(self, file_path: Path) -> str:
        return decode_text(file_path.read_bytes(), source=str(file_path))

    def _parse_text(self, file_path: Path, file_type: str) -> str:
        return self._read_text(file_path)

    _parse_code = _parse_text

    def _parse_markdown(self, file_path: Path, file_type: str) -> str:
        return self.markdown.parse_text(self._read_text(file_path))

    def _parse_html(self, file_path: Path, file_type: str) -> str:
        from bs4 import BeautifulSoup

        soup = BeautifulSoup(self._read_text(file_path), "lxml")
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()

        # Block elements become paragraph breaks so the chunker can see them
        for tag in soup.find_all(["p", "div", "section", "article", "li", "tr", "h1", "h2", "h3", "h4", "h5", "h6", "pre", "blockquote"]):
            tag.insert_after("\n\n")

        text = soup.get_text()
        return "\n".join(line.strip() for line in text.split("\n"))

    def _parse_csv(self, file_path: Path, file_type: str) -> str:
        delimiter = "\t" if file_type == "tsv" else ","
        content = self._read_text(file_path)

        try:
            rows = list(csv.reader(io.StringIO(content), delimiter=delimiter))
        except csv.Error as e:
            raise CorruptFile(f"Malformed {file_type.upper()} file {file_path.name}: {e}") from e

        return "\n".join(delimiter.join(cell.strip() for cell in row) for row in rows if any(row))

    def _parse_xlsx(self, file_path: Path, file_type: str) -> str:
        from openpyxl import load_workbook
        from openpyxl.utils.exceptions import InvalidFileException

        try:
            workbook = load_workbook(file_path, read_only=True, data_only=True)
        except (zipfile.BadZipFile, InvalidFileException, KeyError) as e:
            raise CorruptFile(f"Cannot open spreadsheet {file_path.name}: {e}") from e

        blocks = []
        try:
            for sheet in workbook.worksheets:
                lines = []
                for row in sheet.iter_rows(values_only=True):
                    cells = ["" if value is None else str(value).strip() for value in row]
                    if any(cells):
                        lines.append("\t".join(cells).rstrip("\t"))
                if lines:
                    blocks.append(f"{sheet.title}\n" + "\n".join(lines))
        finally:
            workbook.close()

        return "\n\n".join(blocks)

    def _parse_docx(self, file_path: Path, file_type: str) -> str:
        from docx import Document as DocxDocument
        from docx.opc.exceptions import PackageNotFoundError

        try:
            doc = DocxDocument(str(file_path))
        except (zipfile.BadZipFile, PackageNotFoundError, KeyError, ValueError) as e:
            raise CorruptFile(f"Cannot open DOCX {file_path.name}: {e}") from e

        paragraphs = [p.text for p in doc.paragraphs if p.text.strip()]

        # Table cells are paragraphs too but python-docx lists them separately
        for table in doc.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells]
                if any(cells):
                    paragraphs.append("\t".join(cells))

        return "\n\n".join(paragraphs)

    def _parse_pdf(self, file_path: Path, file_type: str) -> str:
        from pypdf import PdfReader
        from pypdf.errors import PyPdfError

        try:
            reader = PdfReader(str(file_path))
            pages = []
            for page in reader.pages:
                text = page.extract_text() or ""
                if text.strip():
                    pages.append(text)
        except (PyPdfError, ValueError, KeyError) as e:
            raise CorruptFile(f"Cannot open PDF {file_path.name}: {e}") from e

        return "\n\n".join(pages)


# Singleton instance for convenience
_parser_instance: Optional[DocumentParser] = None


def get_parser() -> DocumentParser:
    """Get a singleton document parser instance."""
    global _parser_instance
    if _parser_instance is None:
        _parser_instance = DocumentParser()
    return _parser_instance


def parse_document(file_path: Path, declared_type: Optional[str] = None) -> str:
    """Parse a file and return its plain text (convenience function)."""
    return get_parser().parse(file_path, declared_type).text
