import logging
import os
import re
import shutil
import subprocess
import uuid
from pathlib import Path

from ..storage.store import secure_delete
from .models import ConversionOutcome, ConversionQuality, ConversionType

log = logging.getLogger(__name__)

_PDF_PAGE = re.compile(rb"/Type\s*/Page(?![s\w])")


def count_pdf_pages(path: Path) -> int | None:
    try:
        count = len(_PDF_PAGE.findall(path.read_bytes()))
    except OSError:
        return None
    return count or None


def conversion_for_output(output_path: Path) -> ConversionType | None:
    for conversion_type in ConversionType:
        if output_path.suffix.lower() == conversion_type.output_extension:
            return conversion_type
    return None


class LibreOfficeConverter:
    """Converter backed by a headless LibreOffice (``soffice``) process.

    Inputs arrive decrypted under temporary names, so the direction is taken
    from the extension of ``output_path`` rather than from the input.
    """

    def __init__(self, *, binary: str | None = None, timeout_sec: int = 300) -> None:
        self._binary = binary
        self._timeout = timeout_sec

    def _resolve_binary(self) -> str | None:
        if self._binary:
            return self._binary
        return shutil.which("soffice") or shutil.which("libreoffice")

    def _command(
        self,
        binary: str,
        conversion_type: ConversionType,
        source: Path,
        out_dir: Path,
        quality: str,
        preserve_formatting: bool,
    ) -> list[str]:
        cmd = [binary, "--headless", "--norestore", "--nolockcheck"]
        if conversion_type is ConversionType.PDF_TO_DOCX:
            # without the import filter LibreOffice opens PDFs in Draw
            cmd += ["--infilter=writer_pdf_import", "--convert-to", 'docx:"MS Word 2007 XML"']
        else:
            filter_options = "writer_pdf_Export"
            if quality == ConversionQuality.HIGH.value or preserve_formatting:
                filter_options += ':{"ReduceImageResolution":{"type":"boolean","value":"false"}}'
            cmd += ["--convert-to", f"pdf:{filter_options}"]
        cmd += ["--outdir", str(out_dir), str(source)]
        return cmd

    def convert(
        self,
        input_path: Path,
        output_path: Path,
        quality: str,
        preserve_formatting: bool,
    ) -> ConversionOutcome:
        output_path = Path(output_path)
        conversion_type = conversion_for_output(output_path)
        if conversion_type is None:
            return ConversionOutcome(success=False, error=f"unsupported output type: {output_path.suffix!r}")
        binary = self._resolve_binary()
        if binary is None:
            return ConversionOutcome(success=False, error="LibreOffice (soffice) is not installed")

        # document copies stay beside the output, inside the caller's scratch area
        output_path.parent.mkdir(parents=True, exist_ok=True)
        work_dir = output_path.parent / f"soffice-{uuid.uuid4().hex}.tmp"
        work_dir.mkdir()
        try:
            source = work_dir / f"source.{conversion_type.source_type}"
            shutil.copyfile(input_path, source)
            out_dir = work_dir / "out"
            out_dir.mkdir()
            cmd = self._command(binary, conversion_type, source, out_dir, quality, preserve_formatting)
            log.info("running soffice for %s", conversion_type.value)
            profile = work_dir / "profile"
            profile.mkdir()
            try:
                proc = subprocess.run(
                    cmd,
                    capture_output=True,
                    timeout=self._timeout,
                    check=False,
                    # private profile so parallel workers do not share a lock
                    env={**os.environ, "HOME": str(profile)},
                )
            except subprocess.TimeoutExpired:
                return ConversionOutcome(success=False, error=f"conversion timed out after {self._timeout}s")

            produced = out_dir / f"source{conversion_type.output_extension}"
            if proc.returncode != 0 or not produced.exists():
                stderr = proc.stderr.decode("utf-8", errors="replace").strip()
                return ConversionOutcome(
                    success=False,
                    error=f"soffice exited with {proc.returncode}: {stderr or 'no output produced'}",
                )
            os.replace(produced, output_path)
        finally:
            _scrub(work_dir)

        page_count = None
        if conversion_type is ConversionType.DOCX_TO_PDF:
            page_count = count_pdf_pages(output_path)
        return ConversionOutcome(success=True, page_count=page_count)


def _scrub(work_dir: Path) -> None:
    for path in work_dir.rglob("*"):
        if path.is_file():
            try:
                secure_delete(path)
            except OSError as e:
                log.warning("could not securely delete %s: %s", path, e)
    shutil.rmtree(work_dir, ignore_errors=True)
