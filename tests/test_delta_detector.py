from foldersync.core.errors import ErrorKind
from foldersync.sync.delta import DeltaDetector
from foldersync.sync.queue import TaskDirection, TaskStatus


def _pending(queue):
    return sorted(queue.list_tasks(status=TaskStatus.PENDING.value), key=lambda t: t.id)


def test_first_full_pass_uploads_local_only_file(detector, local_tree, queue):
    ref = local_tree.add_file("a.txt", b"hello")

    summary = detector.run(full=True)

    assert summary["mode"] == "full"
    assert summary["enqueued"] == 1
    [task] = _pending(queue)
    assert task.direction == TaskDirection.UPLOAD
    assert task.remote_path == "/FolderSync/a.txt"
    assert task.local_ref == ref


def test_repeated_pass_without_changes_enqueues_nothing(detector, local_tree, queue):
    local_tree.add_file("a.txt", b"hello")
    detector.run(full=True)

    again = detector.run(full=True)

    assert again["enqueued"] == 0
    assert again["skipped_duplicate"] == 1
    assert len(queue.list_tasks()) == 1


def test_synced_tree_is_stable(sync_all, detector, local_tree, queue):
    local_tree.add_file("a.txt", b"hello")
    sync_all()
    before = len(queue.list_tasks())

    incremental = detector.run()
    full = detector.run(full=True)

    assert incremental["mode"] == "incremental"
    assert incremental["enqueued"] == 0
    assert full["enqueued"] == 0
    assert len(queue.list_tasks()) == before


def test_remote_only_file_is_downloaded(detector, remote, queue):
    remote.put("/FolderSync/Albums/cover.jpg", b"jpeg")

    detector.run(full=True)

    [task] = _pending(queue)
    assert task.direction == TaskDirection.DOWNLOAD
    assert task.remote_path == "/FolderSync/Albums/cover.jpg"
    assert task.local_ref is None
    assert task.payload["remote_id"]


def test_files_outside_remote_root_are_ignored(detector, remote, queue):
    remote.put("/FolderSync/in.txt", b"in")
    remote.put("/Other/out.txt", b"out")

    detector.run(full=True)

    assert [t.remote_path for t in _pending(queue)] == ["/FolderSync/in.txt"]


def test_incremental_pass_uses_stored_cursor(sync_all, detector, remote, local_tree, mappings):
    local_tree.add_file("a.txt", b"v1")
    sync_all()
    cursor = mappings.get_cursor()
    assert cursor

    remote.put("/FolderSync/a.txt", b"v2")
    summary = detector.run()

    assert ("list_delta", cursor, "/FolderSync") in remote.calls
    assert summary["by_direction"] == {"download": 1}


def test_remote_modification_downloads_into_mapped_file(sync_all, detector, remote, local_tree, queue):
    ref = local_tree.add_file("a.txt", b"v1")
    sync_all()

    remote.put("/FolderSync/a.txt", b"v2")
    detector.run()

    [task] = _pending(queue)
    assert task.direction == TaskDirection.DOWNLOAD
    assert task.local_ref == ref


def test_local_modification_uploads(sync_all, detector, local_tree, queue):
    ref = local_tree.add_file("a.txt", b"v1")
    sync_all()

    local_tree.edit(ref, b"v2")
    detector.run()

    [task] = _pending(queue)
    assert task.direction == TaskDirection.UPLOAD
    assert task.remote_path == "/FolderSync/a.txt"


def test_touch_without_content_change_only_updates_mapping(sync_all, detector, local_tree, mappings, queue):
    ref = local_tree.add_file("a.txt", b"v1")
    sync_all()

    local_tree.edit(ref, b"v1", mtime=9_000)
    summary = detector.run()

    assert summary["enqueued"] == 0
    assert mappings.get_file(ref).local_mtime == 9_000
    assert _pending(queue) == []


def test_local_deletion_deletes_remote(sync_all, detector, local_tree, queue):
    ref = local_tree.add_file("a.txt", b"v1")
    sync_all()

    local_tree.delete(ref)
    detector.run()

    [task] = _pending(queue)
    assert task.direction == TaskDirection.DELETE_REMOTE
    assert task.remote_path == "/FolderSync/a.txt"


def test_remote_deletion_seen_through_cursor(sync_all, detector, remote, local_tree, queue):
    ref = local_tree.add_file("a.txt", b"v1")
    sync_all()

    remote.remove("/FolderSync/a.txt")
    detector.run()

    [task] = _pending(queue)
    assert task.direction == TaskDirection.DELETE_LOCAL
    assert task.local_ref == ref


def test_full_pass_detects_remote_deletion_by_absence(sync_all, detector, remote, local_tree, queue):
    local_tree.add_file("a.txt", b"v1")
    sync_all()

    del remote.files["/foldersync/a.txt"]
    detector.run(full=True)

    [task] = _pending(queue)
    assert task.direction == TaskDirection.DELETE_LOCAL


def test_missing_remote_root_skips_deletion_detection(sync_all, detector, remote, local_tree, queue, log_messages):
    local_tree.add_file("a.txt", b"v1")
    sync_all()

    remote.files.clear()
    remote.folders.clear()
    detector.run(full=True)

    assert _pending(queue) == []
    assert "remote_root_missing_deletions_skipped" in log_messages("delta")


def test_both_modified_with_same_content_is_reconciled(sync_all, detector, remote, local_tree, mappings, queue):
    ref = local_tree.add_file("a.txt", b"v1")
    sync_all()

    local_tree.edit(ref, b"same", mtime=5_000)
    remote.put("/FolderSync/a.txt", b"same", mtime=4_000)
    summary = detector.run()

    assert summary["enqueued"] == 0
    assert summary["reconciled"] == 1
    assert mappings.get_file(ref).local_mtime == 5_000
    assert _pending(queue) == []


def test_both_modified_newer_local_wins(sync_all, detector, remote, local_tree, queue, log):
    ref = local_tree.add_file("a.txt", b"v1")
    sync_all()

    local_tree.edit(ref, b"local edit", mtime=5_000)
    remote.put("/FolderSync/a.txt", b"remote edit", mtime=4_000)
    summary = detector.run()

    assert summary["conflicts"] == 1
    [task] = _pending(queue)
    assert task.direction == TaskDirection.UPLOAD
    conflict = [i for i in log.list_logs(level="notice")["items"] if i["message"] == "conflict_resolved"]
    assert conflict[0]["context"]["kind"] == ErrorKind.CONFLICT_RESOLVED.value
    assert conflict[0]["context"]["winner"] == "local"


def test_both_modified_newer_remote_wins(sync_all, detector, remote, local_tree, queue):
    ref = local_tree.add_file("a.txt", b"v1")
    sync_all()

    local_tree.edit(ref, b"local edit", mtime=4_000)
    remote.put("/FolderSync/a.txt", b"remote edit", mtime=5_000)
    detector.run()

    [task] = _pending(queue)
    assert task.direction == TaskDirection.DOWNLOAD
    assert task.local_ref == ref


def test_equal_mtimes_follow_tie_break(sync_all, remote, local_tree, mappings, queue, log):
    ref = local_tree.add_file("a.txt", b"v1")
    sync_all()
    local_tree.edit(ref, b"local edit", mtime=5_000)
    remote.put("/FolderSync/a.txt", b"remote edit", mtime=5_000)

    local_first = DeltaDetector(remote, local_tree, mappings, queue, log, remote_root="/FolderSync", tie_break="local")
    local_first.run()

    [task] = _pending(queue)
    assert task.direction == TaskDirection.UPLOAD


def test_equal_mtimes_default_to_remote(sync_all, detector, remote, local_tree, queue):
    ref = local_tree.add_file("a.txt", b"v1")
    sync_all()
    local_tree.edit(ref, b"local edit", mtime=5_000)
    remote.put("/FolderSync/a.txt", b"remote edit", mtime=5_000)

    detector.run()

    [task] = _pending(queue)
    assert task.direction == TaskDirection.DOWNLOAD


def test_modification_beats_deletion(sync_all, detector, remote, local_tree, queue):
    ref = local_tree.add_file("a.txt", b"v1")
    sync_all()

    local_tree.delete(ref)
    remote.put("/FolderSync/a.txt", b"remote edit")
    summary = detector.run()

    assert summary["conflicts"] == 1
    [task] = _pending(queue)
    assert task.direction == TaskDirection.DOWNLOAD
    assert task.local_ref is None


def test_local_edit_beats_remote_deletion(sync_all, detector, remote, local_tree, queue):
    ref = local_tree.add_file("a.txt", b"v1")
    sync_all()

    local_tree.edit(ref, b"local edit")
    remote.remove("/FolderSync/a.txt")
    detector.run()

    [task] = _pending(queue)
    assert task.direction == TaskDirection.UPLOAD
    assert task.local_ref == ref


def test_deleted_on_both_sides_drops_mapping(sync_all, detector, remote, local_tree, mappings, queue):
    ref = local_tree.add_file("a.txt", b"v1")
    sync_all()

    local_tree.delete(ref)
    remote.remove("/FolderSync/a.txt")
    summary = detector.run()

    assert summary["enqueued"] == 0
    assert mappings.get_file(ref) is None


def test_unmapped_file_on_both_sides_with_same_content_is_linked(detector, remote, local_tree, mappings, queue):
    ref = local_tree.add_file("a.txt", b"same")
    remote.put("/FolderSync/a.txt", b"same")

    summary = detector.run(full=True)

    assert summary["enqueued"] == 0
    assert mappings.get_file(ref).remote_path == "/FolderSync/a.txt"


def test_invalid_remote_path_is_skipped_with_warning(detector, remote, queue, log_messages):
    remote.put("/FolderSync/bad\x01name.txt", b"x")
    remote.put("/FolderSync/good.txt", b"y")

    summary = detector.run(full=True)

    assert summary["skipped_invalid"] == 1
    assert [t.remote_path for t in _pending(queue)] == ["/FolderSync/good.txt"]
    assert "remote_entry_skipped" in log_messages("delta", level="warning")


def test_cursor_reset_falls_back_to_full_listing(sync_all, detector, remote, local_tree, log_messages):
    local_tree.add_file("a.txt", b"v1")
    sync_all()

    remote.reset_cursor = True
    summary = detector.run()

    assert summary["mode"] == "full"
    assert remote.calls[-1] == ("list_delta", None, "/FolderSync")
    assert "cursor_reset_full_listing" in log_messages("delta")


def test_local_rename_emits_rename_task(sync_all, detector, local_tree, queue):
    ref = local_tree.add_file("a.txt", b"v1")
    sync_all()

    local_tree.rename(ref, "b.txt")
    detector.run()

    [task] = _pending(queue)
    assert task.direction == TaskDirection.RENAME
    assert task.remote_path == "/FolderSync/a.txt"
    assert task.payload["side"] == "remote"
    assert task.payload["to_path"] == "/FolderSync/b.txt"


def test_remote_move_emits_local_move_task(sync_all, detector, remote, local_tree, queue):
    local_tree.add_file("a.txt", b"v1")
    sync_all()

    remote.relocate("/FolderSync/a.txt", "/FolderSync/Archive/a.txt")
    detector.run()

    [task] = _pending(queue)
    assert task.direction == TaskDirection.MOVE
    assert task.payload["side"] == "local"
    assert task.payload["to_path"] == "/FolderSync/Archive/a.txt"


def test_empty_local_folder_is_created_remotely(detector, local_tree, queue):
    local_tree.create_folder(None, "Empty")

    detector.run(full=True)

    [task] = _pending(queue)
    assert task.direction == TaskDirection.UPLOAD
    assert task.item_type == "folder"
    assert task.remote_path == "/FolderSync/Empty"


def test_local_folder_deletion_emits_one_folder_task(sync_all, detector, local_tree, queue):
    folder = local_tree.create_folder(None, "Albums")
    local_tree.add_file("a.jpg", b"a", folder_id=folder)
    local_tree.add_file("b.jpg", b"b", folder_id=folder)
    sync_all()

    local_tree.delete(folder)
    summary = detector.run()

    [task] = _pending(queue)
    assert task.direction == TaskDirection.DELETE_REMOTE
    assert task.item_type == "folder"
    assert task.remote_path == "/FolderSync/Albums"
    assert summary["suppressed"] == 2


def test_file_moved_out_before_folder_removal_is_moved_not_deleted(sync_all, detector, remote, local_tree, queue):
    folder = local_tree.create_folder(None, "A")
    ref = local_tree.add_file("x.txt", b"x", folder_id=folder)
    sync_all()

    remote.relocate("/FolderSync/A/x.txt", "/FolderSync/B/x.txt")
    remote.remove("/FolderSync/A")
    detector.run()

    tasks = {(t.direction, t.item_type, t.remote_path): t for t in _pending(queue)}
    move = tasks[(TaskDirection.MOVE, "file", "/FolderSync/A/x.txt")]
    assert move.local_ref == ref
    assert move.payload["to_path"] == "/FolderSync/B/x.txt"
    assert (TaskDirection.DELETE_LOCAL, "folder", "/FolderSync/A") in tasks
    assert not any(d == TaskDirection.DELETE_LOCAL and kind == "file" for d, kind, _ in tasks)


def test_remote_folder_removal_emits_one_local_folder_task(sync_all, detector, remote, local_tree, queue):
    folder = local_tree.create_folder(None, "A")
    local_tree.add_file("x.txt", b"x", folder_id=folder)
    local_tree.add_file("y.txt", b"y", folder_id=folder)
    sync_all()

    remote.remove("/FolderSync/A")
    summary = detector.run()

    [task] = _pending(queue)
    assert task.direction == TaskDirection.DELETE_LOCAL
    assert task.item_type == "folder"
    assert task.local_ref == folder
    assert summary["suppressed"] == 2


def test_local_folder_rename_emits_one_folder_task(sync_all, detector, local_tree, queue):
    folder = local_tree.create_folder(None, "A")
    local_tree.add_file("x.txt", b"x", folder_id=folder)
    local_tree.add_file("y.txt", b"y", folder_id=folder)
    sync_all()

    local_tree.rename(folder, "B")
    summary = detector.run(full=True)

    [task] = _pending(queue)
    assert task.direction == TaskDirection.RENAME
    assert task.item_type == "folder"
    assert task.local_ref == folder
    assert task.remote_path == "/FolderSync/A"
    assert task.payload == {"side": "remote", "to_path": "/FolderSync/B"}
    assert summary["enqueued"] == 1


def test_new_file_in_renamed_folder_waits_for_the_folder_move(sync_all, detector, local_tree, queue):
    folder = local_tree.create_folder(None, "A")
    local_tree.add_file("x.txt", b"x", folder_id=folder)
    sync_all()

    local_tree.rename(folder, "B")
    local_tree.add_file("new.txt", b"n", folder_id=folder)
    detector.run(full=True)

    [task] = _pending(queue)
    assert task.item_type == "folder"
    assert task.payload["to_path"] == "/FolderSync/B"


def test_folder_rename_with_remote_edit_inside_falls_back_to_file_tasks(sync_all, detector, remote, local_tree, queue):
    folder = local_tree.create_folder(None, "A")
    local_tree.add_file("x.txt", b"x", folder_id=folder)
    sync_all()

    local_tree.rename(folder, "B")
    remote.put("/FolderSync/A/x.txt", b"remote edit")
    detector.run()

    assert not any(t.item_type == "folder" for t in _pending(queue))
