import numpy as np
import pandas as pd
import pytest

# ete3 only exposes its drawing classes when PyQt5 is installed
pytest.importorskip("PyQt5")

from tree_heatmap import (  # noqa: E402
    GREY77,
    TreeRenderOptions,
    build_tree_style,
    collapse_clade,
    color_bounds,
    flip_clades,
    prepare_plot_tree,
    identity_colors,
    plot_identity_heatmap,
    render_tree_heatmap,
    view_clade,
)
from tree_io import find_node, load_tree, midpoint_root, number_nodes, tip_labels  # noqa: E402


@pytest.fixture
def matrix():
    return pd.DataFrame(
        {"ctxA": [100.0, 82.5, 80.0], "ctxB": [99.1, np.nan, np.nan]},
        index=pd.Index(["A", "B", "C"], name="file_name"),
    )


@pytest.fixture
def annotations(metadata):
    return metadata.set_index("file_name").rename_axis("label")


def test_options_reject_unknown_layout():
    with pytest.raises(ValueError, match="layout"):
        TreeRenderOptions(layout="slanted")


def test_options_reject_unknown_colnames_position():
    with pytest.raises(ValueError, match="colnames_position"):
        TreeRenderOptions(colnames_position="left")


def test_options_normalise_sequences():
    options = TreeRenderOptions(label_columns=["strain_ID"], collapsed_nodes=[6])
    assert options.label_columns == ("strain_ID",)
    assert options.collapsed_nodes == (6,)


def test_options_default_labels_match_workshop():
    assert TreeRenderOptions().label_columns == ("strain_ID", "serogroup")


def test_options_reject_flip_that_is_not_a_pair():
    with pytest.raises(ValueError, match="pairs"):
        TreeRenderOptions(flip_nodes=[(6, 7, 8)])


def test_color_bounds_default_to_observed_range(matrix):
    assert color_bounds(matrix) == (80.0, 100.0)
    assert color_bounds(matrix, vmin=0) == (0, 100.0)


def test_identity_colors_scale_and_absent_cells(matrix):
    colors = identity_colors(matrix, low="lightblue", high="darkblue")

    assert colors.loc["A", "ctxA"] == "#00008b"
    assert colors.loc["C", "ctxA"] == "#add8e6"
    assert colors.loc["B", "ctxB"] == GREY77
    assert colors.loc["A", "ctxB"] not in (GREY77, "#add8e6", "#00008b")


def test_zero_identity_is_not_rendered_as_absent():
    matrix = pd.DataFrame({"ctxA": [0.0, np.nan, 100.0]}, index=["A", "B", "C"])

    colors = identity_colors(matrix, na_color="#c4c4c4")

    assert colors.loc["A", "ctxA"] != colors.loc["B", "ctxA"]


def test_build_tree_style_rectangular_defaults(annotations, matrix):
    tree_style = build_tree_style(annotations, matrix, TreeRenderOptions(label_columns=("strain_ID", "serogroup")))

    assert tree_style.mode == "r"
    assert tree_style.force_topology is False
    assert tree_style.show_leaf_name is False
    assert tree_style.draw_guiding_lines is True
    # Two label columns, then one header per gene
    assert sorted(tree_style.aligned_header.keys()) == [2, 3]
    assert len(tree_style.aligned_foot) == 0
    assert tree_style.layout_fn


def test_build_tree_style_circular_cladogram(annotations, matrix):
    options = TreeRenderOptions(layout="circular", branch_length="none", colnames_position="bottom",
                                label_columns=())

    tree_style = build_tree_style(annotations, matrix, options)

    assert tree_style.mode == "c"
    assert tree_style.force_topology is True
    assert tree_style.show_scale is False
    assert sorted(tree_style.aligned_foot.keys()) == [1, 2]


def test_view_clade_returns_detached_copy(newick):
    tree = load_tree(newick)

    clade = view_clade(tree, 7)

    assert tip_labels(clade) == ["C", "D"]
    assert clade.up is None
    assert len(tree) == 4


def test_flip_clades_swaps_siblings(newick):
    tree = load_tree(newick)

    flipped = flip_clades(tree, 6, 7)

    assert tip_labels(flipped) == ["C", "D", "A", "B"]
    assert tip_labels(tree) == ["A", "B", "C", "D"]


def test_flip_clades_rejects_non_siblings(newick):
    with pytest.raises(ValueError, match="not siblings"):
        flip_clades(load_tree(newick), 6, 3)


def test_collapse_clade_hides_descendants(newick):
    tree = load_tree(newick)

    collapse_clade(tree, 6)

    assert find_node(tree, 6).img_style["draw_descendants"] is False
    assert find_node(tree, 7).img_style["draw_descendants"] is True


def test_render_rejects_unknown_format(tmp_path, newick, annotations, matrix):
    with pytest.raises(ValueError, match="Unsupported image format"):
        render_tree_heatmap(load_tree(newick), annotations, matrix, tmp_path / "tree.gif")


def test_render_tree_heatmap_writes_image(tmp_path, newick, annotations, matrix):
    tree = load_tree(newick)
    before = tree.write()
    output = tmp_path / "output" / "tree_heat.png"

    written = render_tree_heatmap(tree, annotations, matrix, output,
                                  TreeRenderOptions(label_columns=("strain_ID", "serogroup"),
                                                    show_node_numbers=True, collapsed_nodes=(7,)),
                                  dpi=72, width=400)

    assert written == output
    assert output.stat().st_size > 0
    assert tree.write() == before


def test_plot_identity_heatmap(tmp_path, matrix):
    output = tmp_path / "figures" / "identity_heatmap.png"

    plot_identity_heatmap(matrix, output, dpi=50)

    assert output.exists()


def test_prepare_plot_tree_flips_and_keeps_node_numbers(newick):
    tree = load_tree(newick)

    plot_tree = prepare_plot_tree(tree, TreeRenderOptions(midpoint_root=False, flip_nodes=((6, 7),)))

    assert tip_labels(plot_tree) == ["C", "D", "A", "B"]
    # Labels drawn with show_node_numbers still carry the numbers used for the flip
    assert (plot_tree & "A").up.node_id == 6
    assert tip_labels(tree) == ["A", "B", "C", "D"]


def test_prepare_plot_tree_numbers_once_before_all_changes(newick):
    options = TreeRenderOptions(midpoint_root=False, flip_nodes=((3, 4),), view_node=7, collapsed_nodes=(6,))

    plot_tree = prepare_plot_tree(load_tree(newick), options)

    assert tip_labels(plot_tree) == ["D", "C"]
    assert plot_tree.up is None
    assert plot_tree.node_id == 7


def test_prepare_plot_tree_uses_midpoint_rooted_numbers():
    tree = load_tree("((A:1,B:1):1,(C:1,(D:1,E:10):1):1);")
    numbered = number_nodes(midpoint_root(tree))
    rest_id = next(i for i, node in numbered.items() if not node.is_leaf() and len(node) == 4)

    plot_tree = prepare_plot_tree(tree, TreeRenderOptions(view_node=rest_id))

    assert set(tip_labels(plot_tree)) == {"A", "B", "C", "D"}


def test_prepare_plot_tree_unknown_node(newick):
    with pytest.raises(ValueError, match="Node 42"):
        prepare_plot_tree(load_tree(newick), TreeRenderOptions(collapsed_nodes=(42,)))
