"""Lists scoped by a many-to-one relationship, plain and polymorphic."""

import pytest

from helpers import find, ids, positions
from support_models import (
    AssociationScopeListMixin,
    MediaFile,
    Parent,
    Playlist,
    PlaylistMediaFile,
    PolymorphicAssociationScopeListMixin,
    association_scope_mixins,
    playlist_files,
    polymorphic_scope_mixins,
)


@pytest.fixture
def association_lists(session):
    session.add(Parent(id=5, name="five"))
    for i in range(1, 5):
        session.add(AssociationScopeListMixin(pos=i, parent_id=5))
    session.commit()
    return session


@pytest.fixture
def polymorphic_lists(session):
    for parent_type in ("ParentClass", "Other"):
        for i in range(1, 5):
            session.add(PolymorphicAssociationScopeListMixin(pos=i, parent_id=5, parent_type=parent_type))
    session.commit()
    return session


def test_association_scope_is_configured():
    assert association_scope_mixins.scope.key_attributes == ("parent_id",)


def test_polymorphic_association_scope_is_configured():
    assert polymorphic_scope_mixins.scope.key_attributes == ("parent_id", "parent_type")


def test_association_scope_reordering(association_lists):
    s = association_lists
    association_scope_mixins.move_to_bottom(s, find(s, AssociationScopeListMixin, 1))
    assert ids(s, AssociationScopeListMixin, parent_id=5) == [2, 3, 4, 1]
    assert find(s, AssociationScopeListMixin, 1).parent.name == "five"


def test_polymorphic_scope_separates_types(polymorphic_lists):
    s = polymorphic_lists
    polymorphic_scope_mixins.move_to_top(s, find(s, PolymorphicAssociationScopeListMixin, 4))

    assert ids(s, PolymorphicAssociationScopeListMixin, parent_id=5, parent_type="ParentClass") == [4, 1, 2, 3]
    assert ids(s, PolymorphicAssociationScopeListMixin, parent_id=5, parent_type="Other") == [5, 6, 7, 8]


def test_changing_the_type_alone_moves_the_item(polymorphic_lists):
    s = polymorphic_lists
    find(s, PolymorphicAssociationScopeListMixin, 2).parent_type = "Other"
    s.flush()

    assert ids(s, PolymorphicAssociationScopeListMixin, parent_id=5, parent_type="ParentClass") == [1, 3, 4]
    assert positions(s, PolymorphicAssociationScopeListMixin, parent_id=5, parent_type="ParentClass") == [1, 2, 3]
    assert ids(s, PolymorphicAssociationScopeListMixin, parent_id=5, parent_type="Other") == [5, 6, 7, 8, 2]


def test_playlist_files_follow_their_playlist(session):
    rock, jazz = Playlist(name="rock"), Playlist(name="jazz")
    songs = [MediaFile(name=f"song {i}") for i in range(4)]
    session.add_all([rock, jazz] + songs)
    session.flush()

    entries = []
    for song in songs:
        entry = PlaylistMediaFile(playlist=rock, media_file=song)
        session.add(entry)
        session.flush()
        entries.append(entry)

    assert [entry.position for entry in entries] == [1, 2, 3, 4]
    assert playlist_files.scope_condition(entries[0]) == {"playlist_id": rock.id}

    # reassigning through the relationship is a rescope
    entries[1].playlist = jazz
    session.flush()

    assert [entries[i].position for i in (0, 2, 3)] == [1, 2, 3]
    assert entries[1].position == 1
    assert [entry.id for entry in playlist_files.list_items(session, entries[0])] == [
        entries[0].id,
        entries[2].id,
        entries[3].id,
    ]


def test_playlist_item_methods(session):
    playlist = Playlist(name="mix")
    session.add(playlist)
    session.flush()

    first = PlaylistMediaFile(playlist=playlist)
    second = PlaylistMediaFile(playlist=playlist)
    session.add_all([first, second])
    session.flush()

    assert second.move_to_top() is True
    assert (first.position, second.position) == (2, 1)
    assert second.lower_item() is first
    assert first.is_last()
    assert first.insert_at(1) == 1
    assert [entry.id for entry in first.lower_items()] == [second.id]


@pytest.fixture
def playlists(session):
    rock, jazz = Playlist(name="rock"), Playlist(name="jazz")
    session.add_all([rock, jazz])
    session.flush()
    for playlist, count in ((rock, 3), (jazz, 1)):
        for _ in range(count):
            session.add(PlaylistMediaFile(playlist=playlist))
            session.flush()
    session.commit()
    rock_ids = ids(session, PlaylistMediaFile, playlist_id=rock.id)
    jazz_ids = ids(session, PlaylistMediaFile, playlist_id=jazz.id)
    return rock, jazz, rock_ids, jazz_ids


def test_insert_at_new_entry_assigned_through_relationship(session, playlists):
    rock, _jazz, rock_ids, _jazz_ids = playlists
    entry = PlaylistMediaFile(playlist=rock)

    assert playlist_files.insert_at(session, entry, 1) == 1

    assert positions(session, PlaylistMediaFile, playlist_id=rock.id) == [1, 2, 3, 4]
    assert ids(session, PlaylistMediaFile, playlist_id=rock.id) == [entry.id] + rock_ids
    assert ids(session, PlaylistMediaFile, playlist_id=None) == []


def test_append_new_entry_assigned_through_relationship(session, playlists):
    rock, _jazz, rock_ids, _jazz_ids = playlists
    entry = PlaylistMediaFile(playlist=rock)

    assert playlist_files.append(session, entry) is True

    assert entry.position == 4
    assert positions(session, PlaylistMediaFile, playlist_id=rock.id) == [1, 2, 3, 4]
    assert ids(session, PlaylistMediaFile, playlist_id=rock.id) == rock_ids + [entry.id]


def test_insert_at_after_unflushed_reassignment(session, playlists):
    rock, jazz, rock_ids, jazz_ids = playlists
    entry = session.get(PlaylistMediaFile, rock_ids[0])
    entry.playlist = jazz

    assert playlist_files.insert_at(session, entry, 1) == 1

    assert ids(session, PlaylistMediaFile, playlist_id=rock.id) == rock_ids[1:]
    assert positions(session, PlaylistMediaFile, playlist_id=rock.id) == [1, 2]
    assert ids(session, PlaylistMediaFile, playlist_id=jazz.id) == [entry.id] + jazz_ids
    assert positions(session, PlaylistMediaFile, playlist_id=jazz.id) == [1, 2]


def test_move_to_top_after_unflushed_reassignment(session, playlists):
    rock, jazz, rock_ids, jazz_ids = playlists
    entry = session.get(PlaylistMediaFile, rock_ids[1])
    entry.playlist = jazz

    assert playlist_files.move_to_top(session, entry) is True

    assert ids(session, PlaylistMediaFile, playlist_id=rock.id) == [rock_ids[0], rock_ids[2]]
    assert positions(session, PlaylistMediaFile, playlist_id=rock.id) == [1, 2]
    assert ids(session, PlaylistMediaFile, playlist_id=jazz.id) == [entry.id] + jazz_ids
    assert positions(session, PlaylistMediaFile, playlist_id=jazz.id) == [1, 2]


def test_will_leave_list_sees_unflushed_relationship_assignment(session, playlists):
    rock, jazz, rock_ids, _jazz_ids = playlists
    entry = session.get(PlaylistMediaFile, rock_ids[0])

    entry.playlist = rock
    assert playlist_files.will_leave_list(entry) is False

    entry.playlist = jazz
    assert entry.playlist_id == rock.id
    assert playlist_files.will_leave_list(entry) is True
    assert playlist_files.pending_scope_condition(entry) == {"playlist_id": jazz.id}
    assert playlist_files.scope_condition(entry) == {"playlist_id": rock.id}
