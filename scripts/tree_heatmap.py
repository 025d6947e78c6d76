import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from ete3 import NodeStyle, RectFace, TextFace, TreeNode, TreeStyle, faces
from matplotlib.colors import LinearSegmentedColormap, Normalize, to_hex

from tree_io import find_node, midpoint_root, number_nodes

# Set environment variable for non-interactive backend
os.environ['QT_QPA_PLATFORM'] = 'offscreen'

LAYOUTS = {"rectangular": "r", "circular": "c"}
BRANCH_LENGTHS = {"branch.length", "none"}
COLNAMES_POSITIONS = {"top", "bottom"}
RENDER_SUFFIXES = {".png", ".jpeg", ".jpg", ".pdf", ".svg"}

GREY77 = "#c4c4c4"


@dataclass
class TreeRenderOptions:
    """Style of the annotated tree and its heatmap.

    ``branch_length="none"`` draws a cladogram. ``label_columns`` name
    annotation columns drawn next to each tip, one face column each; with no
    label columns the tip name itself is drawn. ``heatmap_offset`` is the gap
    in pixels between the labels and the first heatmap column.

    ``collapsed_nodes``, ``flip_nodes`` and ``view_node`` use the node
    numbers of the tree as drawn, i.e. after midpoint rooting; these are
    the numbers ``show_node_numbers`` prints.
    """
    layout: str = "rectangular"
    branch_length: str = "branch.length"
    midpoint_root: bool = True
    show_scale: bool = True
    scale: Optional[float] = None
    label_columns: Tuple[str, ...] = ("strain_ID", "serogroup")
    label_colors: Tuple[str, ...] = ("blue", "black")
    label_size: int = 12
    label_offset: int = 4
    align_labels: bool = True
    show_node_numbers: bool = False
    collapsed_nodes: Tuple[int, ...] = ()
    flip_nodes: Tuple[Tuple[int, int], ...] = ()
    view_node: Optional[int] = None
    heatmap_offset: int = 20
    cell_width: int = 30
    cell_height: int = 14
    heatmap_font_size: int = 10
    colnames_position: str = "top"
    border_color: str = "black"
    low: str = "lightblue"
    high: str = "darkblue"
    na_color: str = GREY77
    legend_title: str = "% identity"
    vmin: Optional[float] = None
    vmax: Optional[float] = None
    title: Optional[str] = None

    def __post_init__(self):
        if self.layout not in LAYOUTS:
            raise ValueError(f"layout must be one of {sorted(LAYOUTS)}, got {self.layout!r}")
        if self.branch_length not in BRANCH_LENGTHS:
            raise ValueError(f"branch_length must be one of {sorted(BRANCH_LENGTHS)}, got {self.branch_length!r}")
        if self.colnames_position not in COLNAMES_POSITIONS:
            raise ValueError(f"colnames_position must be 'top' or 'bottom', got {self.colnames_position!r}")
        if not self.label_colors:
            raise ValueError("label_colors must name at least one color")
        self.label_columns = tuple(self.label_columns)
        self.label_colors = tuple(self.label_colors)
        self.collapsed_nodes = tuple(self.collapsed_nodes)
        self.flip_nodes = tuple(tuple(pair) for pair in self.flip_nodes)
        for pair in self.flip_nodes:
            if len(pair) != 2:
                raise ValueError(f"flip_nodes entries must be pairs of node numbers, got {pair!r}")


def identity_colormap(low: str, high: str) -> LinearSegmentedColormap:
    return LinearSegmentedColormap.from_list("percent_identity", [low, high])


def color_bounds(matrix: pd.DataFrame, vmin: Optional[float] = None,
                 vmax: Optional[float] = None) -> Tuple[float, float]:
    """Color scale limits; default to the observed range of the matrix."""
    values = matrix.to_numpy(dtype=float)
    observed = values[~np.isnan(values)]
    if vmin is None:
        vmin = float(observed.min()) if observed.size else 0.0
    if vmax is None:
        vmax = float(observed.max()) if observed.size else 100.0
    return vmin, vmax


def identity_colors(matrix: pd.DataFrame, low: str = "lightblue", high: str = "darkblue",
                    na_color: str = GREY77, vmin: Optional[float] = None,
                    vmax: Optional[float] = None) -> pd.DataFrame:
    """Map every cell of the feature matrix to a hex color; absent cells get na_color."""
    cmap = identity_colormap(low, high)
    norm = Normalize(*color_bounds(matrix, vmin, vmax), clip=True)

    def to_color(value):
        if pd.isna(value):
            return na_color
        return to_hex(cmap(norm(value)))

    return matrix.apply(lambda column: column.map(to_color))


def _label_text(tip: str, annotations: pd.DataFrame, column: Optional[str], position: int) -> str:
    if column is None:
        return tip
    if tip in annotations.index and column in annotations.columns:
        value = annotations.at[tip, column]
        if pd.notna(value):
            return str(value)
    # Unannotated tips keep their own name in the first label column
    return tip if position == 0 else ""


def _make_layout(annotations: pd.DataFrame, matrix: pd.DataFrame, colors: pd.DataFrame,
                 options: TreeRenderOptions):
    label_columns = list(options.label_columns) or [None]
    label_position = "aligned" if options.align_labels else "branch-right"
    first_cell = len(label_columns)

    def layout(node):
        if node.is_leaf():
            for i, column in enumerate(label_columns):
                face = TextFace(_label_text(node.name, annotations, column, i), fsize=options.label_size,
                                fgcolor=options.label_colors[i % len(options.label_colors)])
                face.margin_left = options.label_offset
                face.margin_right = options.label_offset
                faces.add_face_to_node(face, node, column=i, position=label_position)

            for i, gene in enumerate(matrix.columns):
                fill = colors.at[node.name, gene] if node.name in colors.index else options.na_color
                cell = RectFace(options.cell_width, options.cell_height, fgcolor=options.border_color, bgcolor=fill)
                if i == 0:
                    cell.margin_left = options.heatmap_offset
                faces.add_face_to_node(cell, node, column=first_cell + i, position="aligned")
        elif options.show_node_numbers and hasattr(node, "node_id"):
            number = TextFace(str(node.node_id), fsize=max(options.label_size - 4, 6), fgcolor="dimgray")
            faces.add_face_to_node(number, node, column=0, position="branch-right")

    return layout


def _add_legend(tree_style: TreeStyle, matrix: pd.DataFrame, options: TreeRenderOptions, steps: int = 5) -> None:
    vmin, vmax = color_bounds(matrix, options.vmin, options.vmax)
    cmap = identity_colormap(options.low, options.high)
    norm = Normalize(vmin, vmax, clip=True)

    tree_style.legend.add_face(TextFace(options.legend_title, fsize=options.heatmap_font_size), column=0)
    tree_style.legend.add_face(TextFace(" "), column=1)
    for value in np.linspace(vmax, vmin, steps):
        tree_style.legend.add_face(RectFace(options.cell_height, options.cell_height, options.border_color,
                                            to_hex(cmap(norm(value)))), column=0)
        tree_style.legend.add_face(TextFace(f" {value:.0f}", fsize=options.heatmap_font_size), column=1)
    tree_style.legend.add_face(RectFace(options.cell_height, options.cell_height, options.border_color,
                                        options.na_color), column=0)
    tree_style.legend.add_face(TextFace(" NA", fsize=options.heatmap_font_size), column=1)
    tree_style.legend_position = 1


def build_tree_style(annotations: pd.DataFrame, matrix: pd.DataFrame,
                     options: Optional[TreeRenderOptions] = None) -> TreeStyle:
    """Build the ete3 TreeStyle drawing tip labels and the percent identity heatmap.

    Faces are attached by the layout function at render time, so the tree
    itself is never decorated.
    """
    options = options or TreeRenderOptions()
    colors = identity_colors(matrix, options.low, options.high, options.na_color, options.vmin, options.vmax)

    tree_style = TreeStyle()
    tree_style.mode = LAYOUTS[options.layout]
    tree_style.force_topology = options.branch_length == "none"
    tree_style.show_leaf_name = False
    tree_style.show_scale = options.show_scale and not tree_style.force_topology
    if options.scale:
        tree_style.scale = options.scale

    # Dotted leader lines from each tip to its aligned labels
    tree_style.draw_guiding_lines = options.align_labels
    tree_style.guiding_lines_type = 2

    if options.title:
        tree_style.title.add_face(TextFace(options.title, fsize=options.label_size + 4), column=0)

    first_cell = max(len(options.label_columns), 1)
    header = tree_style.aligned_header if options.colnames_position == "top" else tree_style.aligned_foot
    for i, gene in enumerate(matrix.columns):
        face = TextFace(str(gene), fsize=options.heatmap_font_size)
        face.hz_align = 1
        if i == 0:
            face.margin_left = options.heatmap_offset
        header.add_face(face, column=first_cell + i)

    if not matrix.empty:
        _add_legend(tree_style, matrix, options)

    tree_style.layout_fn = _make_layout(annotations, matrix, colors, options)
    return tree_style


def _lookup(numbered: Dict[int, TreeNode], node_id: int) -> TreeNode:
    if node_id not in numbered:
        raise ValueError(f"Node {node_id} does not exist (tree has {len(numbered)} nodes).")
    return numbered[node_id]


def _hide_descendants(node: TreeNode) -> None:
    nstyle = NodeStyle()
    nstyle["draw_descendants"] = False
    nstyle["shape"] = "square"
    nstyle["size"] = 8
    nstyle["fgcolor"] = "black"
    node.set_style(nstyle)


def _swap_siblings(first: TreeNode, second: TreeNode, first_id: int, second_id: int) -> None:
    parent = first.up
    if parent is None or second.up is not parent:
        raise ValueError(f"Nodes {first_id} and {second_id} are not siblings and cannot be flipped.")

    children = parent.children
    i, j = children.index(first), children.index(second)
    children[i], children[j] = children[j], children[i]


def collapse_clade(tree: TreeNode, node_id: int) -> TreeNode:
    """Hide the descendants of a numbered node (in place) and return the node."""
    node = find_node(tree, node_id)
    _hide_descendants(node)
    logging.debug(f"Collapsed node {node_id} ({len(node)} tips).")
    return node


def view_clade(tree: TreeNode, node_id: int) -> TreeNode:
    """Return a copy of the clade below a numbered node as its own tree."""
    clade = find_node(tree.copy(), node_id)
    clade.detach()
    logging.info(f"🔍 Viewing clade {node_id} with {len(clade)} tips.")
    return clade


def flip_clades(tree: TreeNode, first_id: int, second_id: int) -> TreeNode:
    """Return a copy of the tree with two sibling clades swapped."""
    flipped = tree.copy()
    numbered = number_nodes(flipped)
    _swap_siblings(_lookup(numbered, first_id), _lookup(numbered, second_id), first_id, second_id)
    logging.info(f"🔄 Flipped clades {first_id} and {second_id}.")
    return flipped


def prepare_plot_tree(tree: TreeNode, options: Optional[TreeRenderOptions] = None) -> TreeNode:
    """Root, number and rearrange a copy of the tree the way it will be drawn.

    Nodes are numbered once, after rooting, and every flip, collapse and
    clade view refers to that numbering. Nodes keep their number as the
    node_id feature, so node labels match the numbers passed in.
    """
    options = options or TreeRenderOptions()
    plot_tree = midpoint_root(tree) if options.midpoint_root else tree.copy()
    numbered = number_nodes(plot_tree)

    for first_id, second_id in options.flip_nodes:
        _swap_siblings(_lookup(numbered, first_id), _lookup(numbered, second_id), first_id, second_id)
        logging.info(f"🔄 Flipped clades {first_id} and {second_id}.")

    for node_id in options.collapsed_nodes:
        _hide_descendants(_lookup(numbered, node_id))
        logging.debug(f"Collapsed node {node_id}.")

    if options.view_node is not None:
        plot_tree = _lookup(numbered, options.view_node).detach()
        logging.info(f"🔍 Viewing clade {options.view_node} with {len(plot_tree)} tips.")

    return plot_tree


def render_tree_heatmap(tree: TreeNode, annotations: pd.DataFrame, matrix: pd.DataFrame,
                        output_file: Union[str, Path], options: Optional[TreeRenderOptions] = None,
                        dpi: int = 300, width: Optional[int] = None) -> Path:
    """Render the annotated tree with its heatmap and save it as an image."""
    options = options or TreeRenderOptions()
    output_file = Path(output_file)
    if output_file.suffix.lower() not in RENDER_SUFFIXES:
        raise ValueError(f"Unsupported image format {output_file.suffix!r}; use one of {sorted(RENDER_SUFFIXES)}")

    plot_tree = prepare_plot_tree(tree, options)

    # Ensure output directory exists
    output_file.parent.mkdir(parents=True, exist_ok=True)

    tree_style = build_tree_style(annotations, matrix, options)

    render_kwargs = {"tree_style": tree_style, "dpi": dpi}
    if width:
        render_kwargs.update(w=width, units="px")
    plot_tree.render(str(output_file), **render_kwargs)

    logging.info(f"✅ Tree heatmap saved to: {output_file}")
    return output_file


def plot_identity_heatmap(matrix: pd.DataFrame, output_file: Union[str, Path],
                          options: Optional[TreeRenderOptions] = None, dpi: int = 300) -> Path:
    """Creates and saves a standalone heatmap of the percent identity matrix."""
    options = options or TreeRenderOptions()
    output_file = Path(output_file)

    # Ensure output directory exists
    output_file.parent.mkdir(parents=True, exist_ok=True)

    vmin, vmax = color_bounds(matrix, options.vmin, options.vmax)
    n_rows, n_cols = matrix.shape

    plt.figure(figsize=(max(4, 1.2 * n_cols + 2), max(4, 0.3 * n_rows + 1)))
    ax = sns.heatmap(
        matrix,
        cmap=identity_colormap(options.low, options.high),
        mask=matrix.isna(),
        vmin=vmin,
        vmax=vmax,
        linewidths=0.5,
        linecolor=options.border_color,
        cbar_kws={"label": options.legend_title},
    )
    # Masked (absent) cells show the background
    ax.set_facecolor(options.na_color)
    if options.colnames_position == "top":
        ax.xaxis.tick_top()

    plt.xlabel("Gene")
    plt.ylabel("Sample")
    plt.title(options.title or "Percent identity of BLAST hits")

    plt.savefig(output_file, dpi=dpi, bbox_inches="tight")
    plt.close()

    logging.info(f"✅ Identity heatmap saved to: {output_file}")
    return output_file
