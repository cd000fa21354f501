"""
Unit tests for restore selection (pgbackup/restore/selector.py).
"""

import pytest

from pgbackup.config import ConfigurationError, DestinationKind, PostgresSettings
from pgbackup.restore.catalog import Completeness, FolderInfo
from pgbackup.restore.selector import (
    ArtifactNotFoundError,
    InvalidSelectionError,
    MenuAction,
    RestoreScope,
    RestoreScopeKind,
    RestoreSelector,
    dry_run,
    parse_choice,
    request_from_parameters,
    scope_options,
)


def scripted(*answers):
    """input() replacement returning answers in order."""
    queue = list(answers)
    return lambda prompt='': queue.pop(0)


class TestRequestFromParameters:
    """Test automated-mode request building."""

    @pytest.mark.parametrize('params', [
        {},
        {'source': 'local'},
        {'source': 'local', 'folder': '20250101_000000'},
        {'folder': '20250101_000000', 'type': 'cluster'},
        {'source': 'local', 'type': 'cluster', 'database': 'app'},
    ])
    def test_incomplete_parameters_give_none(self, params):
        assert request_from_parameters(params) is None

    def test_cluster_request(self):
        request = request_from_parameters({'source': 's3', 'folder': '20250101_000000', 'type': 'cluster'})

        assert request.source is DestinationKind.S3
        assert request.folder == '20250101_000000'
        assert request.scope == RestoreScope.cluster()

    def test_database_request(self):
        request = request_from_parameters({
            'source': 'remote', 'folder': '20250101_000000', 'type': 'database', 'database': 'app'
        })
        assert request.scope == RestoreScope.for_database('app')
        assert request.scope.file_name == 'postgres_db_app.sql.gz'

    def test_database_without_name(self):
        """Test a database restore with no RESTORE_DATABASE is rejected."""
        with pytest.raises(ConfigurationError, match='RESTORE_DATABASE'):
            request_from_parameters({'source': 'local', 'folder': '20250101_000000', 'type': 'database'})

    def test_unknown_type_and_source(self):
        with pytest.raises(ConfigurationError):
            request_from_parameters({'source': 'local', 'folder': '20250101_000000', 'type': 'schema'})
        with pytest.raises(ConfigurationError):
            request_from_parameters({'source': 'ftp', 'folder': '20250101_000000', 'type': 'cluster'})


class TestParseChoice:

    @pytest.mark.parametrize('raw', ['', 'abc', '4', '-1', '0', '1.5'])
    def test_invalid(self, raw):
        with pytest.raises(InvalidSelectionError):
            parse_choice(raw, 3)

    def test_valid(self):
        assert parse_choice(' 2 ', 3) == 2
        assert parse_choice('0', 3, allow_zero=True) == 0


class TestScopes:
    """Test scope options and their artifacts."""

    def test_scope_options_follow_folder_contents(self, tmp_path, make_backup_folder):
        folder = make_backup_folder(tmp_path, '20250101_000000', globals_=False, databases=['b', 'a'])

        assert scope_options(str(folder)) == [
            RestoreScope.cluster(), RestoreScope.for_database('a'), RestoreScope.for_database('b')
        ]

    def test_file_names(self):
        assert RestoreScope.cluster().file_name == 'postgres_cluster.sql.gz'
        assert RestoreScope.globals_only().file_name == 'postgres_globals.sql.gz'

    def test_kind_parse(self):
        assert RestoreScopeKind.parse(' Globals ') is RestoreScopeKind.GLOBALS


class TestRestoreSelector:
    """Test interactive prompts with scripted input."""

    def folders(self):
        return [
            FolderInfo('20250102_000000', Completeness.COMPLETE, 2048),
            FolderInfo('20250101_000000', Completeness.PARTIAL, 1024),
        ]

    def test_select_folder(self):
        output = []
        selector = RestoreSelector(scripted('2'), output.append)

        assert selector.select_folder(self.folders()).folder_id == '20250101_000000'
        assert any(line.startswith('1. 20250102_000000') for line in output)

    def test_select_folder_cancel(self):
        assert RestoreSelector(scripted('0'), lambda line: None).select_folder(self.folders()) is None

    @pytest.mark.parametrize('answer', ['3', 'x', ''])
    def test_select_folder_invalid(self, answer):
        with pytest.raises(InvalidSelectionError):
            RestoreSelector(scripted(answer), lambda line: None).select_folder(self.folders())

    def test_select_folder_empty(self):
        with pytest.raises(InvalidSelectionError):
            RestoreSelector(scripted('1'), lambda line: None).select_folder([])

    def test_select_scope(self, tmp_path, make_backup_folder):
        """Test options are cluster, globals, databases, dry run, cancel."""
        folder = make_backup_folder(tmp_path, '20250101_000000', databases=['app'])
        output = []

        choice = RestoreSelector(scripted('3'), output.append).select_scope(str(folder))

        assert choice == RestoreScope.for_database('app')
        assert '4. Dry Run (show what would be restored)' in output
        assert '5. Cancel' in output

    def test_select_scope_menu_actions(self, tmp_path, make_backup_folder):
        folder = make_backup_folder(tmp_path, '20250101_000000', databases=[])

        assert RestoreSelector(scripted('3'), lambda line: None).select_scope(str(folder)) is MenuAction.DRY_RUN
        assert RestoreSelector(scripted('4'), lambda line: None).select_scope(str(folder)) is MenuAction.CANCEL

    def test_select_dry_run_scope_database(self, tmp_path, make_backup_folder):
        folder = make_backup_folder(tmp_path, '20250101_000000', databases=['app', 'shop'])
        output = []

        scope = RestoreSelector(scripted('database', 'shop'), output.append).select_dry_run_scope(str(folder))

        assert scope == RestoreScope.for_database('shop')
        assert 'Available databases: app shop' in output

    def test_select_dry_run_scope_unknown(self, tmp_path):
        with pytest.raises(InvalidSelectionError):
            RestoreSelector(scripted('everything'), lambda line: None).select_dry_run_scope(str(tmp_path))


class TestDryRun:
    """Test dry-run reports."""

    def test_report(self, tmp_path, make_backup_folder):
        folder = make_backup_folder(tmp_path, '20250101_000000')
        postgres = PostgresSettings('db.example.com', 5432, 'postgres')

        report = dry_run(RestoreScope.cluster(), str(folder), postgres)
        lines = report.lines()

        assert report.folder == '20250101_000000'
        assert 'DRY RUN - No Changes Will Be Made' in lines[1]
        assert 'Target PostgreSQL: db.example.com:5432' in lines
        assert '  - Existing data will be overwritten' in lines

    def test_missing_database_artifact(self, tmp_path, make_backup_folder):
        folder = make_backup_folder(tmp_path, '20250101_000000', databases=['app'])

        with pytest.raises(ArtifactNotFoundError, match='shop'):
            dry_run(RestoreScope.for_database('shop'), str(folder), PostgresSettings('h', 5432, 'u'))
