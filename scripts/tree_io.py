import logging
from pathlib import Path
from typing import Dict, Iterable, List, Union

import pandas as pd
from ete3 import Tree, TreeNode
from ete3.parser.newick import NewickError

EXCEL_SUFFIXES = {".xlsx", ".xls"}
TSV_SUFFIXES = {".tsv", ".tab"}


def load_tree(tree_file: Union[str, Path], newick_format: int = 1) -> Tree:
    """Load a Newick tree (file path or Newick string)."""
    if isinstance(tree_file, Path) and not tree_file.exists():
        raise FileNotFoundError(f"Tree file not found: {tree_file}")

    try:
        tree = Tree(str(tree_file), format=newick_format)
    except NewickError as e:
        raise ValueError(f"Could not parse Newick tree: {e}") from e
    logging.info(f"🌳 Tree loaded with {len(tree.get_leaves())} leaves.")
    return tree


def load_table(file_path: Union[str, Path], sheet_name: Union[int, str] = 0) -> pd.DataFrame:
    """Read a metadata or BLAST table from Excel, TSV or CSV."""
    file_path = Path(file_path)
    suffix = file_path.suffix.lower()

    if suffix in EXCEL_SUFFIXES:
        df = pd.read_excel(file_path, sheet_name=sheet_name)
    elif suffix in TSV_SUFFIXES:
        df = pd.read_csv(file_path, sep="\t")
    elif suffix == ".csv":
        df = pd.read_csv(file_path)
    else:
        raise ValueError(f"Unsupported table format: {file_path.name}")

    logging.info(f"📄 Loaded {len(df)} rows x {len(df.columns)} columns from {file_path}")
    return df


def tip_labels(tree: TreeNode) -> List[str]:
    """Leaf names in traversal order."""
    return tree.get_leaf_names()


def midpoint_root(tree: TreeNode) -> TreeNode:
    """Return a copy of the tree rooted at the midpoint of its longest tip-to-tip path."""
    rooted = tree.copy()
    outgroup = rooted.get_midpoint_outgroup()
    if outgroup is not None and outgroup is not rooted:
        rooted.set_outgroup(outgroup)
        logging.info(f"📍 Midpoint root placed above {len(outgroup)} tip(s).")
    return rooted


def prune_to_tips(tree: TreeNode, keep: Iterable[str]) -> TreeNode:
    """Return a copy of the tree restricted to the given tips, keeping branch lengths."""
    keep = list(keep)
    if not keep:
        raise ValueError("Cannot prune a tree down to zero tips.")

    pruned = tree.copy()
    pruned.prune(keep, preserve_branch_length=True)
    logging.info(f"✂️ Pruned tree to {len(pruned)} tips.")
    return pruned


def number_nodes(tree: TreeNode) -> Dict[int, TreeNode]:
    """Number nodes the way ggtree does and store the number as the node_id feature.

    Tips get 1..n in tip order, the root gets n + 1 and the remaining
    internal nodes follow in preorder.
    """
    numbered = {}
    for node_id, leaf in enumerate(tree.iter_leaves(), start=1):
        numbered[node_id] = leaf

    node_id = len(numbered)
    for node in tree.traverse("preorder"):
        if not node.is_leaf():
            node_id += 1
            numbered[node_id] = node

    for node_id, node in numbered.items():
        node.add_feature("node_id", node_id)

    return numbered


def find_node(tree: TreeNode, node_id: int) -> TreeNode:
    """Look up a node by its ggtree-style number."""
    numbered = number_nodes(tree)
    if node_id not in numbered:
        raise ValueError(f"Node {node_id} does not exist (tree has {len(numbered)} nodes).")
    return numbered[node_id]
