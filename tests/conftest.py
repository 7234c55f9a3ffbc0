"""Ensure src/ is on sys.path so ``import dagmesh`` resolves to ``src/dagmesh/``
without an editable install, and provide shared DAG/agent fixtures.
"""

import sys
from pathlib import Path

import pytest

_src = str(Path(__file__).resolve().parent.parent / "src")
if _src not in sys.path:
    sys.path.insert(0, _src)

from dagmesh.models import DAGSpec, ExecutionPolicy, Node  # noqa: E402


def make_dag(dag_id="dag", deps=None, **policy):
    """DAGSpec from {node_id: [dependency ids]} with an ExecutionPolicy built from kwargs."""
    deps = deps if deps is not None else {"n1": []}
    return DAGSpec(
        id=dag_id,
        nodes=[Node(id=nid, dependencies=list(d)) for nid, d in deps.items()],
        execution_policy=ExecutionPolicy(**policy),
    )


@pytest.fixture
def dag_factory():
    return make_dag
