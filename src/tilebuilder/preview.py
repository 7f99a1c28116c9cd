"""HTML preview index of generated SVGs for visual review."""

from __future__ import annotations

from html import escape
from pathlib import Path

from .models import MetaFile


def write_preview_index(
    *,
    meta_file: MetaFile,
    svg_dir: Path,
    output_html: Path,
    title: str,
    thumbnail_width_px: int,
    max_columns: int,
) -> Path:
    """Write one card per sidecar entry, flagging entries without an SVG."""
    rows: list[str] = []
    missing = 0
    for code, meta in meta_file.metas.items():
        name = str(meta.get("name") or code)
        svg_name = f"{code}.svg"
        svg_ok = (svg_dir / svg_name).exists()
        if not svg_ok:
            missing += 1
        relative_src = Path(svg_dir.name) / svg_name if svg_dir.parent == output_html.parent else svg_dir / svg_name
        centroid = meta.get("centroid") or {}
        scale = (meta.get("projected") or {}).get("scale")
        details = f"centroid {centroid.get('lon', 0.0):.3f}, {centroid.get('lat', 0.0):.3f}"
        if isinstance(scale, (int, float)):
            details += f" | {scale:.2f} px/deg"
        image_cell = (
            f"  <img src='{escape(relative_src.as_posix())}' alt='{escape(name)}' width='{thumbnail_width_px}'>"
            if svg_ok
            else "  <div class='placeholder'>SVG not generated</div>"
        )
        rows.append(
            "\n".join(
                [
                    "<div class='card'>",
                    f"  <h3>{escape(name)} ({escape(code)})</h3>",
                    f"  <p class='status {'ready' if svg_ok else 'missing'}'>{'READY' if svg_ok else 'MISSING'}</p>",
                    image_cell,
                    f"  <p class='details'>{escape(details)}</p>",
                    "</div>",
                ]
            )
        )

    html = "\n".join(
        [
            "<!doctype html>",
            "<html lang='en'>",
            "<head>",
            "  <meta charset='utf-8'>",
            "  <meta name='viewport' content='width=device-width, initial-scale=1'>",
            f"  <title>{escape(title)} preview</title>",
            "  <style>",
            "    body { font-family: Arial, sans-serif; margin: 16px; }",
            "    .grid { "
            f"display: grid; grid-template-columns: repeat({max_columns}, minmax(160px, 1fr)); "
            "gap: 16px; }",
            "    .card { border: 1px solid #ddd; border-radius: 8px; padding: 12px; }",
            "    .card h3 { margin: 0 0 8px 0; font-size: 15px; }",
            "    .status { margin: 0 0 8px 0; font-weight: 700; }",
            "    .status.ready { color: #197a2f; }",
            "    .status.missing { color: #b22d2d; }",
            "    .details { margin: 4px 0 0 0; font-size: 12px; color: #555; }",
            "    img { display: block; max-width: 100%; background: #f4f6f8; }",
            "    .placeholder {",
            "      border: 1px dashed #bbb;",
            "      color: #666;",
            "      border-radius: 6px;",
            "      padding: 12px;",
            "      background: #fafafa;",
            "      font-size: 13px;",
            "    }",
            "  </style>",
            "</head>",
            "<body>",
            f"  <h1>{escape(title)} ({len(meta_file.metas)} features, {missing} missing)</h1>",
            f"  <p>Generated at {escape(meta_file.generated_at)}</p>",
            "  <div class='grid'>",
            *rows,
            "  </div>",
            "</body>",
            "</html>",
            "",
        ]
    )
    output_html.parent.mkdir(parents=True, exist_ok=True)
    output_html.write_text(html, encoding="utf-8")
    return output_html
