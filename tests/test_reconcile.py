import os

import pytest
from conftest import StaticStore, build_state

from sftpmatic.events import EventBus
from sftpmatic.reconcile import AccountReconciler
from sftpmatic.session import SessionPreparer

INVENTORY = "sftp-user-inventory"


@pytest.fixture
def reconciler(settings, runner):
    return AccountReconciler(settings, runner)


@pytest.mark.asyncio
async def test_creates_user_home_and_keys(reconciler, runner, settings):
    state = build_state({"Users": [{"Username": "alice", "Password": "pw",
                                    "PublicKeys": ["ssh-ed25519 AAAA alice@laptop"]}]})
    await reconciler.reconcile(state)

    home = settings.home_dir("alice")
    assert "alice" in runner.users
    assert runner.groups[INVENTORY]["members"] == ["alice"]
    assert runner.commands("useradd")[0][-1] == "alice"
    assert runner.owners[home] == "root:root"
    assert runner.modes[home] == 0o755

    keys = os.path.join(home, ".ssh", "authorized_keys")
    with open(keys) as f:
        assert f.read() == "ssh-ed25519 AAAA alice@laptop\n"
    assert runner.owners[keys] == "alice"
    assert runner.modes[keys] == 0o400


@pytest.mark.asyncio
async def test_imported_key_files_come_before_literal_keys(reconciler, settings):
    keys_dir = os.path.join(settings.home_dir("alice"), ".ssh", "keys")
    os.makedirs(keys_dir)
    with open(os.path.join(keys_dir, "b.pub"), "w") as f:
        f.write("ssh-rsa BBBB second\n\n")
    with open(os.path.join(keys_dir, "a.pub"), "w") as f:
        f.write("ssh-rsa AAAA first\n")

    await reconciler.reconcile(build_state({"Users": [{"Username": "alice", "PublicKeys": ["ssh-ed25519 CCCC third"]}]}))
    with open(os.path.join(settings.home_dir("alice"), ".ssh", "authorized_keys")) as f:
        assert f.read().splitlines() == ["ssh-rsa AAAA first", "ssh-rsa BBBB second", "ssh-ed25519 CCCC third"]


@pytest.mark.asyncio
async def test_second_run_issues_no_mutations(reconciler, runner):
    state = build_state({
        "Users": [
            {"Username": "alice", "Password": "pw", "GID": 3000, "PublicKeys": ["ssh-ed25519 AAAA a"]},
            {"Username": "bob", "UID": 1500},
        ],
        "Groups": [{"Name": "team", "GID": 2000, "Users": ["alice", "bob"]}],
    })
    await reconciler.reconcile(state)
    assert runner.mutations()

    runner.calls.clear()
    await reconciler.reconcile(state)
    assert runner.mutations() == []


@pytest.mark.asyncio
async def test_stale_inventory_member_is_deleted(reconciler, runner, settings):
    runner.add_group(INVENTORY)
    runner.add_user("charlie", groups=[INVENTORY])
    runner.seed_owner(settings.home_base, "root:root")

    await reconciler.reconcile(build_state({}))
    assert runner.mutations() == [("userdel", ["charlie"])]


@pytest.mark.asyncio
async def test_failed_deletion_is_tolerated(reconciler, runner):
    runner.add_group(INVENTORY)
    runner.add_user("charlie", groups=[INVENTORY])
    runner.fail_when("userdel", rc=8, out="user charlie is currently logged in")

    await reconciler.reconcile(build_state({"Users": [{"Username": "alice"}]}))
    assert "alice" in runner.users


@pytest.mark.asyncio
async def test_virtual_gid_group_exists_before_useradd(reconciler, runner):
    await reconciler.reconcile(build_state({"Users": [{"Username": "alice", "GID": 3000}]}))
    keys = [k for k, _ in runner.mutations()]
    assert runner.commands("groupadd")[1] == ["-f", "-g", "3000", "-o", "sftp-gid-3000"]
    assert keys.index("groupadd") < keys.index("useradd")
    assert runner.users["alice"]["gid"] == 3000


@pytest.mark.asyncio
async def test_drifted_primary_gid_is_corrected(reconciler, runner):
    runner.add_group(INVENTORY)
    runner.add_user("alice", uid=1001, gid=1001, groups=[INVENTORY])
    await reconciler.reconcile(build_state({"Users": [{"Username": "alice", "GID": 3000}]}))
    assert ["-g", "3000", "alice"] in runner.commands("usermod")
    assert runner.users["alice"]["gid"] == 3000


@pytest.mark.asyncio
async def test_uid_override_kills_then_changes_uid(reconciler, runner):
    runner.add_group(INVENTORY)
    runner.add_user("alice", uid=1001, groups=[INVENTORY])
    await reconciler.reconcile(build_state({"Users": [{"Username": "alice", "UID": 1500}]}))

    pkill = runner.calls.index(("pkill", ["-U", "1001"]))
    usermod = runner.calls.index(("usermod", ["--non-unique", "--uid", "1500", "alice"]))
    assert pkill < usermod
    assert runner.users["alice"]["uid"] == 1500


@pytest.mark.asyncio
async def test_password_only_reapplied_when_changed(reconciler, runner):
    await reconciler.reconcile(build_state({"Users": [{"Username": "alice", "Password": "one"}]}))
    assert len(runner.commands("chpasswd")) == 1

    await reconciler.reconcile(build_state({"Users": [{"Username": "alice", "Password": "one"}]}))
    assert len(runner.commands("chpasswd")) == 1

    await reconciler.reconcile(build_state({"Users": [{"Username": "alice", "Password": "two"}]}))
    assert len(runner.commands("chpasswd")) == 2
    assert runner.users["alice"]["shadow"].endswith("two")


@pytest.mark.asyncio
async def test_existing_matching_hash_is_left_alone(reconciler, runner):
    runner.add_group(INVENTORY)
    runner.add_user("alice", groups=[INVENTORY], shadow="$6$salt$hash")
    await reconciler.reconcile(build_state({"Users": [
        {"Username": "alice", "Password": "$6$salt$hash", "PasswordIsEncrypted": True}]}))
    assert runner.commands("chpasswd") == []


@pytest.mark.asyncio
async def test_named_group_membership_is_diffed(reconciler, runner):
    runner.add_group(INVENTORY)
    runner.add_user("alice", groups=[INVENTORY])
    runner.add_user("bob")
    runner.add_group("team", 2000, ["bob", "alice"])

    await reconciler.reconcile(build_state({
        "Users": [{"Username": "alice"}],
        "Groups": [{"Name": "team", "GID": 2001, "Users": ["alice", "carol"]}],
    }))
    assert runner.commands("gpasswd") == [["-d", "bob", "team"]]
    assert runner.commands("groupmod") == [["-o", "-g", "2001", "team"]]
    # carol doesn't exist, so she isn't added
    assert ["-aG", "team", "carol"] not in runner.commands("usermod")
    assert runner.groups["team"]["members"] == ["alice"]


@pytest.mark.asyncio
async def test_one_broken_user_does_not_stop_the_rest(reconciler, runner, caplog):
    runner.fail_when("useradd", predicate=lambda args: args[-1] == "broken", rc=1, out="bad name")
    await reconciler.reconcile(build_state({"Users": [{"Username": "broken"}, {"Username": "alice"}]}))
    assert "alice" in runner.users
    assert "Failed to synchronize user 'broken'" in caplog.text


@pytest.mark.asyncio
async def test_home_outside_the_chroot_is_traverse_only(reconciler, runner, settings):
    await reconciler.reconcile(build_state({
        "Global": {"Chroot": {"Directory": "/srv/%u"}},
        "Users": [{"Username": "bob"}],
    }))
    assert runner.modes[settings.home_dir("bob")] == 0o711


@pytest.mark.asyncio
async def test_login_between_runs_leaves_nothing_to_fix(reconciler, runner, settings):
    state = build_state({
        "Global": {"Directories": ["sftp"]},
        "Users": [{"Username": "alice", "PublicKeys": ["ssh-ed25519 AAAA a"]}],
    })
    await reconciler.reconcile(state)
    preparer = SessionPreparer(settings, runner, StaticStore(state), EventBus())
    await preparer.prepare("alice")

    runner.calls.clear()
    await reconciler.reconcile(state)
    assert runner.mutations() == []

    await preparer.prepare("alice")
    assert runner.mutations() == []
