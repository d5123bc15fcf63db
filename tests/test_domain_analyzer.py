"""
Tests for DomainAnalyzer
"""
import pytest

from codepath.core.exceptions import NotFoundError
from codepath.models import SourceFile
from codepath.services.domain_analyzer import complexity_score, initial_group, rate_complexity


def ts(path: str, content: str) -> SourceFile:
    return SourceFile(file_path=path, language="typescript", content=content)


JWT = ts("auth/jwt.ts", "import { Claims } from './types';\n\nexport function sign(claims: Claims) {\n  return '';\n}\n")
TYPES = ts("auth/types.ts", "export interface Claims {\n  sub: string;\n}\n")


class TestHelpers:
    """Test cases for grouping and rating helpers"""

    def test_initial_group_skips_container_directories(self):
        assert initial_group("src/auth/jwt.ts") == "auth"
        assert initial_group("app/lib/billing/tax.py") == "billing"
        assert initial_group("main.py") == "main"
        assert initial_group("src/index.ts") == "root"

    def test_complexity_score_is_bounded_and_monotonic(self):
        small = complexity_score(1, 10, 0)
        large = complexity_score(30, 600, 8)

        assert 0 <= small < large < 1

    def test_rate_complexity(self):
        assert rate_complexity(0.1) == "beginner"
        assert rate_complexity(0.5) == "intermediate"
        assert rate_complexity(0.9) == "advanced"


class TestAnalyze:
    """Test cases for DomainAnalyzer.analyze"""

    @pytest.mark.asyncio
    async def test_two_auth_files_form_one_domain(self, pipeline, analyzer):
        await pipeline.ingest("repo", [JWT, TYPES])

        analysis = await analyzer.analyze("repo")

        assert [domain.name for domain in analysis.domains] == ["auth"]
        auth = analysis.domains[0]
        assert auth.files == ["auth/jwt.ts", "auth/types.ts"]
        # Imported file first
        assert auth.key_files == ["auth/types.ts", "auth/jwt.ts"]
        assert analysis.file_imports["auth/jwt.ts"] == ["auth/types.ts"]
        assert analysis.file_lines["auth/types.ts"] == 3

    @pytest.mark.asyncio
    async def test_domains_ordered_by_dependencies(self, pipeline, analyzer, sample_files):
        await pipeline.ingest("repo", sample_files)

        analysis = await analyzer.analyze("repo")

        assert [domain.name for domain in analysis.domains] == ["models", "auth", "api"]
        assert [domain.position for domain in analysis.domains] == [0, 1, 2]
        assert analysis.domain_dependencies == {
            "models": [],
            "auth": ["models"],
            "api": ["auth", "models"],
        }
        for domain in analysis.domains:
            assert 0 <= domain.complexity_score < 1
            assert domain.complexity == rate_complexity(domain.complexity_score)

    @pytest.mark.asyncio
    async def test_representative_fragments_stay_in_domain(self, pipeline, analyzer, engine, sample_files):
        await pipeline.ingest("repo", sample_files)

        analysis = await analyzer.analyze("repo")

        for domain in analysis.domains:
            assert domain.representative_fragment_ids
            fragments = engine.get_fragments("repo", domain.representative_fragment_ids)
            assert {f.file_path for f in fragments} <= set(domain.files)

    @pytest.mark.asyncio
    async def test_small_group_merges_into_neighbour(self, pipeline, analyzer):
        """A lone helper file joins the group it is connected to"""
        jwt = ts("auth/jwt.ts", "import './types';\nimport { now } from '../helpers/clock';\n")
        clock = ts("helpers/clock.ts", "export const now = () => Date.now();\n")
        await pipeline.ingest("repo", [jwt, TYPES, clock])

        analysis = await analyzer.analyze("repo")

        assert [domain.name for domain in analysis.domains] == ["auth"]
        assert "helpers/clock.ts" in analysis.domains[0].files

    @pytest.mark.asyncio
    async def test_file_follows_majority_of_its_imports(self, pipeline, analyzer, monkeypatch):
        from codepath.config import settings

        monkeypatch.setattr(settings, "min_domain_files", 1)
        files = [
            ts("billing/invoice.ts", "import { Money } from '../shared/money';\nimport { tax } from './tax';\n"),
            ts("billing/tax.ts", "import { Money } from '../shared/money';\n"),
            ts("shared/money.ts", "export type Money = number;\n"),
            ts("users/profile.ts", "export const name = 'x';\n"),
        ]
        await pipeline.ingest("repo", files)

        analysis = await analyzer.analyze("repo")

        billing = analysis.domain("billing")
        assert billing.files == ["billing/invoice.ts", "billing/tax.ts", "shared/money.ts"]
        assert analysis.domain("shared") is None
        assert analysis.domain("users").files == ["users/profile.ts"]

    @pytest.mark.asyncio
    async def test_unknown_repository(self, analyzer):
        with pytest.raises(NotFoundError):
            await analyzer.analyze("never-ingested")
