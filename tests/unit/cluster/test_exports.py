"""
Tests for NFS export table synchronization.
"""
from unittest.mock import patch

import pytest

from sparkctl.cluster.exports import (
    AccessListSynchronizer,
    AccessRule,
    DesiredState,
    FileExportTable,
    InMemoryExportTable
)
from sparkctl.utils.exceptions import SparkCtlError, StorageError

RULE = "/root/spark/data    192.168.11.239/17(rw,sync,no_subtree_check,no_root_squash)"


class FlakyTable(InMemoryExportTable):
    """Export table whose reload fails a set number of times."""

    def __init__(self, lines=None, failures=1):
        super().__init__(lines)
        self.failures = failures

    def reload(self):
        if self.failures:
            self.failures -= 1
            raise SparkCtlError("exportfs -ra failed with exit code 1")
        super().reload()


class TestAccessRule:
    """Single-client export lines."""

    def test_render(self):
        rule = AccessRule("/root/spark/data", "192.168.11.239", 17, "rw,sync,no_subtree_check,no_root_squash")

        assert rule.render() == RULE

    def test_parse(self):
        rule = AccessRule.parse(RULE)

        assert rule.path == "/root/spark/data"
        assert rule.address == "192.168.11.239"
        assert rule.prefix_length == 17
        assert rule.options == "rw,sync,no_subtree_check,no_root_squash"

    @pytest.mark.parametrize("line", [
        "",
        "# /root/spark/data    192.168.11.239/17(rw)",
        "/root/spark/data    192.168.11.239/17(rw) 192.168.11.240/17(rw)",
        "/root/spark/data    *.example.com(rw)",
        "/root/spark/data    worker-1/17(rw)",
    ])
    def test_parse_ignores_other_lines(self, line):
        assert AccessRule.parse(line) is None

    def test_parse_ipv6(self):
        rule = AccessRule.parse("/root/spark/data    fd00::5/64(rw)")

        assert rule.address == "fd00::5"
        assert rule.prefix_length == 64


class TestSync:
    """Converging the table to the desired state."""

    def test_present_adds_one_rule(self, access_list, export_table):
        changed = access_list.sync("192.168.11.239", DesiredState.PRESENT)

        assert changed is True
        assert export_table.lines[-1] == RULE
        assert export_table.reload_count == 1

    def test_present_twice_is_noop(self, access_list, export_table):
        access_list.sync("192.168.11.239", DesiredState.PRESENT)
        changed = access_list.sync("192.168.11.239", DesiredState.PRESENT)

        assert changed is False
        assert access_list.addresses() == ["192.168.11.239"]
        assert export_table.reload_count == 1

    def test_absent_after_present(self, access_list, export_table):
        access_list.sync("192.168.11.239", DesiredState.PRESENT)

        changed = access_list.sync("192.168.11.239", DesiredState.ABSENT)

        assert changed is True
        assert access_list.addresses() == []
        assert export_table.reload_count == 2

    def test_absent_twice_is_noop(self, access_list, export_table):
        assert access_list.sync("192.168.11.239", "absent") is False
        assert export_table.reload_count == 0

    def test_add_keeps_unrelated_lines(self, access_list, export_table):
        access_list.sync("192.168.11.239", DesiredState.PRESENT)
        access_list.sync("192.168.11.240", DesiredState.PRESENT)

        assert export_table.lines[0] == "/srv/other    10.0.0.9/24(ro,sync)"
        assert access_list.addresses() == ["192.168.11.239", "192.168.11.240"]

    def test_remove_only_matching_address(self, access_list, export_table):
        access_list.sync("192.168.11.23", DesiredState.PRESENT)
        access_list.sync("192.168.11.239", DesiredState.PRESENT)

        access_list.sync("192.168.11.23", DesiredState.ABSENT)

        # prefix of another address must not match
        assert access_list.addresses() == ["192.168.11.239"]

    def test_absent_removes_duplicate_lines(self):
        table = InMemoryExportTable([RULE, RULE])
        access_list = AccessListSynchronizer(table)

        access_list.sync("192.168.11.239", DesiredState.ABSENT)

        assert table.lines == []
        assert table.reload_count == 1

    def test_rules_for_other_paths_ignored(self):
        table = InMemoryExportTable(["/srv/other    192.168.11.239/17(rw)"])
        access_list = AccessListSynchronizer(table, shared_path="/root/spark/data")

        access_list.sync("192.168.11.239", DesiredState.PRESENT)

        assert len(table.lines) == 2
        assert access_list.addresses() == ["192.168.11.239"]


    def test_failed_reload_restores_table(self):
        table = FlakyTable(["/srv/other    10.0.0.9/24(ro,sync)"])
        access_list = AccessListSynchronizer(table)

        with pytest.raises(SparkCtlError, match="exportfs"):
            access_list.sync("192.168.11.239", DesiredState.PRESENT)

        assert table.lines == ["/srv/other    10.0.0.9/24(ro,sync)"]

        assert access_list.sync("192.168.11.239", DesiredState.PRESENT) is True
        assert table.lines[-1] == RULE
        assert table.reload_count == 1

    def test_failed_reload_on_remove_keeps_rule(self):
        table = FlakyTable([RULE])
        access_list = AccessListSynchronizer(table)

        with pytest.raises(SparkCtlError):
            access_list.sync("192.168.11.239", DesiredState.ABSENT)

        assert table.lines == [RULE]

    @pytest.mark.parametrize("line", [
        "/root/spark/data    192.168.11.239(rw,sync)",
        "/root/spark/data    192.168.11.239/17(rw) 192.168.11.240/17(rw)",
    ])
    def test_unmanaged_shared_path_line_warns(self, line, caplog):
        table = InMemoryExportTable([line])
        access_list = AccessListSynchronizer(table)

        with caplog.at_level("WARNING", logger="sparkctl"):
            access_list.sync("192.168.11.239", DesiredState.PRESENT)

        assert any("not a single-client rule" in record.getMessage() for record in caplog.records)
        assert table.lines[0] == line

    def test_other_paths_do_not_warn(self, access_list, caplog):
        with caplog.at_level("WARNING", logger="sparkctl"):
            access_list.sync("192.168.11.239", DesiredState.PRESENT)

        assert not [record for record in caplog.records if record.levelname == "WARNING"]

class TestFileExportTable:
    """/etc/exports backed table."""

    def test_missing_file_reads_empty(self, tmp_path):
        assert FileExportTable(tmp_path / "exports").read_lines() == []

    def test_write_and_read(self, tmp_path):
        table = FileExportTable(tmp_path / "exports")

        table.write_lines([RULE])

        assert (tmp_path / "exports").read_text() == RULE + "\n"
        assert table.read_lines() == [RULE]

    def test_reload_runs_exportfs(self, tmp_path):
        table = FileExportTable(tmp_path / "exports")

        with patch("subprocess.run") as mock_run:
            mock_run.return_value.returncode = 0
            table.reload()

        assert mock_run.call_args.args[0] == ["exportfs", "-ra"]

    def test_reload_failure(self, tmp_path):
        table = FileExportTable(tmp_path / "exports")

        with patch("subprocess.run") as mock_run:
            mock_run.return_value.returncode = 1
            mock_run.return_value.stderr = "exportfs: /root/spark/data does not support NFS export"
            with pytest.raises(SparkCtlError, match="exit code 1"):
                table.reload()

    def test_sync_against_file(self, tmp_path):
        path = tmp_path / "exports"
        path.write_text("/srv/other    10.0.0.9/24(ro,sync)\n")
        table = FileExportTable(path, reload_command=["true"])
        access_list = AccessListSynchronizer(table)

        with patch("subprocess.run") as mock_run:
            mock_run.return_value.returncode = 0
            access_list.sync("192.168.11.239", DesiredState.PRESENT)

        assert path.read_text().splitlines() == ["/srv/other    10.0.0.9/24(ro,sync)", RULE]


    def test_unwritable_file(self, tmp_path):
        table = FileExportTable(tmp_path / "missing-dir" / "exports")

        with pytest.raises(StorageError) as exc_info:
            table.write_lines([RULE])

        assert exc_info.value.path == tmp_path / "missing-dir" / "exports"

    def test_unreadable_file(self, tmp_path):
        (tmp_path / "exports").mkdir()

        with pytest.raises(StorageError):
            FileExportTable(tmp_path / "exports").read_lines()

class TestNFSService:
    """enable-nfs / disable-nfs."""

    def test_enable(self, access_list):
        with patch("subprocess.run") as mock_run:
            mock_run.return_value.returncode = 0
            access_list.enable_sharing()

        assert mock_run.call_args.args[0] == ["systemctl", "start", "nfs-kernel-server.service"]

    def test_disable(self, access_list):
        with patch("subprocess.run") as mock_run:
            mock_run.return_value.returncode = 0
            access_list.disable_sharing()

        assert mock_run.call_args.args[0] == ["systemctl", "stop", "nfs-kernel-server.service"]

    def test_missing_systemctl(self, access_list):
        with patch("subprocess.run", side_effect=FileNotFoundError("systemctl")):
            with pytest.raises(SparkCtlError, match="Cannot run systemctl"):
                access_list.enable_sharing()
