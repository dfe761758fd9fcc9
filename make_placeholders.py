import argparse
from pathlib import Path
import sys

from davtoarr_locator import MUSIC_EXTENSIONS, VIDEO_EXTENSIONS
from davtoarr_runner import SERVICES, cfg_get, load_config

PLACEHOLDER_EXTS = VIDEO_EXTENSIONS | MUSIC_EXTENSIONS

def sanitize_segment(seg: str) -> str:
    # Folder-name friendly version of a path like "/mnt/nzbdav/content/tv"
    bad = '<>:"/\\|?*'
    seg = seg.replace(":", "_")
    for ch in bad:
        seg = seg.replace(ch, "_")
    return "_".join(seg.split()).strip("_")

def iter_media(release_dir: Path):
    for p in sorted(release_dir.rglob("*"), key=lambda p: str(p).casefold()):
        if p.is_file() and p.suffix.lower() in PLACEHOLDER_EXTS:
            yield p

def mirror_source(src: Path, target_base: Path) -> int:
    """Recreate every release directory of *src* under *target_base* with zero-byte media files."""
    count = 0
    for release_dir in sorted((d for d in src.iterdir() if d.is_dir()), key=lambda d: d.name.casefold()):
        (target_base / release_dir.name).mkdir(parents=True, exist_ok=True)
        for media in iter_media(release_dir):
            placeholder = target_base / media.relative_to(src)
            placeholder.parent.mkdir(parents=True, exist_ok=True)
            if not placeholder.exists():
                placeholder.touch()
            count += 1
    return count

def main(argv=None):
    ap = argparse.ArgumentParser(description="Mirror release folders as zero-byte media placeholders")
    ap.add_argument("--source", action="append", help="Content folder with release directories (can be repeated).")
    ap.add_argument("--out", default="./test_mount", help="Output folder for the mirrored tree (default: ./test_mount)")
    ap.add_argument("--use-config", action="store_true",
                    help="Use the radarr/sonarr/lidarr mount_path of enabled services as sources (in addition to any --source).")
    ap.add_argument("--config", help="Config file used with --use-config.")
    args = ap.parse_args(argv)

    sources = []
    if args.use_config:
        cfg = load_config(args.config)
        for service in SERVICES:
            if cfg_get(cfg, f"{service}.enabled", False):
                sources.append(cfg_get(cfg, f"{service}.mount_path"))

    if args.source:
        sources.extend(args.source)

    # Deduplicate while preserving order
    seen = set()
    uniq_sources = []
    for s in sources:
        if s and s not in seen:
            seen.add(s)
            uniq_sources.append(s)

    if not uniq_sources:
        print("No sources provided. Use --source FOLDER or --use-config.", file=sys.stderr)
        sys.exit(2)

    out_root = Path(args.out).resolve()
    out_root.mkdir(parents=True, exist_ok=True)

    multi = len(uniq_sources) > 1
    total = 0
    for src in uniq_sources:
        srcp = Path(src)
        if not srcp.is_dir():
            print(f"[WARN] Source not found: {srcp}", file=sys.stderr)
            continue

        # If multiple sources, mirror each one under a subfolder named after it
        target_base = out_root / sanitize_segment(srcp.name or str(srcp)) if multi else out_root
        target_base.mkdir(parents=True, exist_ok=True)
        count = mirror_source(srcp, target_base)
        total += count
        print(f"[OK] {count} placeholders from {srcp} -> {target_base}")

    print(f"Done. {total} placeholder media files ensured in {out_root}")
    return total

if __name__ == "__main__":
    main()
