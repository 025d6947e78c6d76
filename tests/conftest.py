import matplotlib
import pandas as pd
import pytest

matplotlib.use("Agg")

NEWICK = "((A:0.1,B:0.2):0.05,(C:0.3,D:0.4):0.1);"


@pytest.fixture
def newick():
    return NEWICK


@pytest.fixture
def metadata():
    return pd.DataFrame({
        "file_name": ["A", "B", "C", "D"],
        "strain_ID": ["VC-01", "VC-02", "VC-03", "VC-04"],
        "serogroup": ["O1", "O1", "O139", "non-O1"],
    })


@pytest.fixture
def blast_raw():
    """Long-format BLAST hits; ctxB for B and tcpA for D fall below 80."""
    return pd.DataFrame({
        "file_name": ["A", "A", "B", "B", "C", "D"],
        "gene_name": ["ctxB", "ctxA", "ctxA", "ctxB", "ctxA", "tcpA"],
        "percent_identical": [99.1, 100.0, 82.5, 60.0, 80.0, 79.9],
    })
