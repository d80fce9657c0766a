from __future__ import annotations

import pytest

from ragfuse.app.retrieval.contracts import RetrievedDocument


@pytest.fixture
def corpus() -> list[RetrievedDocument]:
    return [
        RetrievedDocument(
            id="alpha-timeline",
            content="Project Alpha timeline targets a Q2 launch for the data platform.",
            metadata={"title": "Alpha timeline"},
        ),
        RetrievedDocument(
            id="alpha-owner",
            content="The data platform team owns Project Alpha and its launch plan.",
        ),
        RetrievedDocument(
            id="beta-budget",
            content="Project Beta budget review is scheduled after the audit.",
        ),
        RetrievedDocument(
            id="gamma-hiring",
            content="Gamma hiring plan adds two engineers to the search team.",
        ),
    ]
