import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional, Sequence

import matplotlib

from annotation_joiner import (
    KEY_COLUMN,
    AnnotationJoinError,
    CoveragePolicy,
    enforce_coverage,
    filter_and_pivot,
    join_tip_annotations,
    validate_tip_coverage,
)
from tree_heatmap import TreeRenderOptions, plot_identity_heatmap, render_tree_heatmap
from tree_io import load_table, load_tree, prune_to_tips, tip_labels


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Annotate a phylogenetic tree with metadata and BLAST percent identity and export it as an image."
    )
    parser.add_argument("--tree", type=Path, default=Path("data/sample_tree.newick"), help="Newick tree file")
    parser.add_argument("--metadata", type=Path, default=Path("data/metadata.xlsx"),
                        help="Metadata table keyed by file_name (xlsx, tsv or csv)")
    parser.add_argument("--blast", type=Path, default=Path("data/blast_results.xlsx"),
                        help="Long-format BLAST table with file_name, gene_name, percent_identical")
    parser.add_argument("--output", type=Path, default=Path("output/tree_heat.jpeg"), help="Output image")
    parser.add_argument("--heatmap-preview", type=Path, default=None,
                        help="Also save a standalone heatmap of the identity matrix")

    parser.add_argument("--threshold", type=float, default=80.0, help="Minimum percent_identical to keep")
    parser.add_argument("--column-order", nargs="*", default=["ctxA", "ctxB"],
                        help="Preferred gene column order; other genes follow in first-seen order")
    parser.add_argument("--on-duplicate", choices=["max", "raise"], default="max",
                        help="Duplicate (file_name, gene_name) hits: keep the highest or fail")
    parser.add_argument("--coverage-policy", choices=[p.value for p in CoveragePolicy],
                        default=CoveragePolicy.WARN.value, help="What to do with tips that have no metadata")

    parser.add_argument("--layout", choices=["rectangular", "circular"], default="rectangular")
    parser.add_argument("--cladogram", action="store_true", help="Ignore branch lengths")
    parser.add_argument("--no-midpoint-root", dest="midpoint_root", action="store_false")
    parser.add_argument("--labels", nargs="*", default=["strain_ID", "serogroup"],
                        help="Metadata columns drawn next to each tip")
    parser.add_argument("--label-colors", nargs="+", default=["blue", "black"])
    parser.add_argument("--no-align", dest="align_labels", action="store_false",
                        help="Draw labels at the tips instead of aligned with leader lines")
    parser.add_argument("--node-numbers", action="store_true", help="Label internal nodes with their numbers")
    parser.add_argument("--collapse", nargs="*", type=int, default=[], help="Node numbers to collapse")
    parser.add_argument("--flip", nargs=2, type=int, action="append", default=[], metavar=("NODE1", "NODE2"),
                        help="Swap two sibling clades; repeat for more flips")
    parser.add_argument("--view-clade", type=int, default=None, metavar="NODE",
                        help="Draw only the clade below this node")
    parser.add_argument("--colnames-position", choices=["top", "bottom"], default="top")
    parser.add_argument("--low", default="lightblue", help="Color of the lowest identity")
    parser.add_argument("--high", default="darkblue", help="Color of the highest identity")
    parser.add_argument("--legend-title", default="% identity")
    parser.add_argument("--title", default=None)
    parser.add_argument("--dpi", type=int, default=300)
    parser.add_argument("--width", type=int, default=None, help="Image width in pixels")

    parser.add_argument("--log-file", type=Path, default=None, help="Write the log here instead of stderr")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def configure_logging(log_file: Optional[Path] = None, verbose: bool = False) -> None:
    kwargs = {}
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        kwargs.update(filename=str(log_file), filemode="w")  # Overwrite log file each run

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        force=True,
        **kwargs,
    )


def options_from_args(args: argparse.Namespace) -> TreeRenderOptions:
    return TreeRenderOptions(
        layout=args.layout,
        branch_length="none" if args.cladogram else "branch.length",
        midpoint_root=args.midpoint_root,
        label_columns=tuple(args.labels),
        label_colors=tuple(args.label_colors),
        align_labels=args.align_labels,
        show_node_numbers=args.node_numbers,
        collapsed_nodes=tuple(args.collapse),
        flip_nodes=tuple(tuple(pair) for pair in args.flip),
        view_node=args.view_clade,
        colnames_position=args.colnames_position,
        low=args.low,
        high=args.high,
        legend_title=args.legend_title,
        title=args.title,
    )


def run(args: argparse.Namespace) -> List[Path]:
    """Load the inputs, join and reshape the annotations, then render and export the tree."""
    options = options_from_args(args)

    tree = load_tree(args.tree)
    metadata = load_table(args.metadata)
    blast_raw = load_table(args.blast)

    tips = tip_labels(tree)
    metadata_keys = metadata[KEY_COLUMN] if KEY_COLUMN in metadata.columns else []
    kept = enforce_coverage(tips, metadata_keys, CoveragePolicy(args.coverage_policy))
    if len(kept) < len(tips):
        tree = prune_to_tips(tree, kept)
        tips = tip_labels(tree)

    unused = validate_tip_coverage(metadata_keys, tips)
    if unused:
        logging.info(f"ℹ️ {len(unused)} metadata rows do not match any tree tip: {sorted(unused)}")

    annotations = join_tip_annotations(tips, metadata)
    blast_df = filter_and_pivot(blast_raw, args.threshold, args.column_order, on_duplicate=args.on_duplicate)

    unplaced = validate_tip_coverage(blast_df.index, tips)
    if unplaced:
        logging.info(f"ℹ️ {len(unplaced)} BLAST samples do not match any tree tip: {sorted(unplaced)}")

    written = [render_tree_heatmap(tree, annotations, blast_df, args.output, options, dpi=args.dpi,
                                   width=args.width)]

    if args.heatmap_preview is not None:
        written.append(plot_identity_heatmap(blast_df, args.heatmap_preview, options, dpi=args.dpi))

    return written


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_file, args.verbose)
    matplotlib.use('Agg')

    try:
        written = run(args)
    except (AnnotationJoinError, ValueError, FileNotFoundError) as e:
        logging.error(f"❌ {e}")
        return 1

    for path in written:
        print(f"✅ Figure saved to: {path}")
    return 0


# Run the pipeline
if __name__ == "__main__":
    sys.exit(main())
