"""
Record lifecycle tests: validation, callbacks, dirty tracking, optimistic
locking, dependents and transaction rollback.
"""

import asyncio
import datetime

import pytest
import pytest_asyncio

from quarry.faults import (
    ReadOnlyRecordError,
    RecordNotSavedError,
    StaleObjectError,
    ValidationError,
)
from quarry.models import (
    BelongsTo,
    BooleanField,
    CharField,
    Dependent,
    FloatField,
    HasMany,
    Model,
    SchemaRegistry,
    TextField,
    after_commit,
    after_save,
    after_update,
    before_save,
    before_validation,
)
from quarry.models.callbacks import PHASES
from quarry.models.validation import Format, Length, Numericality, Uniqueness, validates


registry = SchemaRegistry("lifecycle")

EVENTS = []


class Base(Model):
    class Meta:
        abstract = True
        registry = registry


class Author(Base):
    table = "authors"

    name = CharField()
    email = CharField(null=True)
    posts = HasMany("Post", dependent=Dependent.DESTROY)
    notes = HasMany("Note", dependent=Dependent.NULLIFY)

    class Meta:
        validations = [Uniqueness("email"), Format("email", r"^[^@]+@[^@]+$")]

    def validate(self, errors):
        if self.name == "root":
            errors.add("name", "is reserved")


class Post(Base):
    table = "posts"

    title = CharField()
    body = TextField(null=True)
    author = BelongsTo("Author")
    comments = HasMany("Comment", dependent=Dependent.DELETE_ALL)

    class Meta:
        locking_column = True
        timestamps = True


class Comment(Base):
    table = "comments"

    body = TextField(null=True)
    post = BelongsTo()


class Note(Base):
    table = "notes"

    text = TextField(null=True)
    author = BelongsTo("Author", optional=True)


def _must_be_upper(value):
    if not value.isupper():
        raise ValueError("must be uppercase")


class Product(Base):
    table = "products"

    name = CharField(null=True)
    price = FloatField(null=True)
    sku = CharField(null=True, validators=[_must_be_upper])

    class Meta:
        validations = [
            *validates("name", presence=True, length={"maximum": 5}),
            Numericality("price", greater_than=0),
            Length("sku", is_=4),
        ]

    @before_validation
    def strip_name(self):
        if isinstance(self.name, str):
            self.name = self.name.strip()


class Widget(Base):
    table = "widgets"

    name = CharField()
    explode = False

    @after_save(if_="explode")
    def blow_up(self):
        raise RuntimeError("boom")


for _phase in PHASES:
    Widget.register_callback(_phase, lambda record, phase=_phase: EVENTS.append(phase))


class Gadget(Base):
    table = "gadgets"

    name = CharField()
    flagged = BooleanField(default=False)

    @before_save(if_="flagged")
    def when_flagged(self):
        EVENTS.append("if")

    @before_save(unless=lambda record: record.flagged)
    def when_not_flagged(self):
        EVENTS.append("unless")

    @after_update
    async def updated(self):
        EVENTS.append("updated")

    @after_save(on="update")
    def saved_update(self):
        EVENTS.append("on_update")

    @after_commit(if_=lambda record: record.name == "bad")
    def fail_commit(self):
        raise RuntimeError("nope")


class SpecialGadget(Gadget):
    table = "gadgets"

    @before_save
    def special(self):
        EVENTS.append("special")


class Fuse(Base):
    table = "fuses"

    name = CharField()
    trip = None

    def validate(self, errors):
        if self.trip == "validate":
            raise RuntimeError("validate")


def _tripwire(phase):
    def callback(record):
        if record.trip == phase:
            raise RuntimeError(phase)
    return callback


for _phase in (
    "before_validation",
    "after_validation",
    "before_save",
    "before_create",
    "before_update",
    "before_destroy",
):
    Fuse.register_callback(_phase, _tripwire(_phase))
Fuse.register_callback("after_rollback", lambda record: EVENTS.append("after_rollback"))


SCHEMA = [
    "CREATE TABLE authors (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL, email TEXT)",
    "CREATE TABLE posts (id INTEGER PRIMARY KEY AUTOINCREMENT, title TEXT NOT NULL, body TEXT, "
    "author_id INTEGER, lock_version INTEGER NOT NULL DEFAULT 0, created_at TEXT, updated_at TEXT)",
    "CREATE TABLE comments (id INTEGER PRIMARY KEY AUTOINCREMENT, body TEXT, post_id INTEGER)",
    "CREATE TABLE notes (id INTEGER PRIMARY KEY AUTOINCREMENT, text TEXT, author_id INTEGER)",
    "CREATE TABLE products (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT, price REAL, sku TEXT)",
    "CREATE TABLE widgets (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL)",
    "CREATE TABLE gadgets (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL, "
    "flagged INTEGER NOT NULL DEFAULT 0)",
    "CREATE TABLE fuses (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL)",
]


@pytest.fixture(autouse=True)
def reset_events():
    EVENTS.clear()
    yield
    EVENTS.clear()


@pytest_asyncio.fixture
async def db(memory_db):
    for statement in SCHEMA:
        await memory_db.execute(statement)
    registry.bind(memory_db)
    return memory_db


class TestDirtyTracking:
    """Changed-attribute bookkeeping."""

    def test_new_record_marks_assigned_columns(self):
        author = Author(name="Ann")
        assert author.is_new_record
        assert author.changed == ["name"]
        assert author.changes == {"name": (None, "Ann")}

    def test_defaults_count_as_changes(self):
        gadget = Gadget(name="g")
        assert gadget.flagged is False
        assert gadget.changed == ["name", "flagged"]

    def test_unknown_attribute(self):
        with pytest.raises(AttributeError):
            Author(nickname="x")

    @pytest.mark.asyncio
    async def test_persisted_record_tracks_against_loaded_value(self, db):
        author = await Author.create(name="Ann")
        assert author.changed == []
        assert author.previous_changes == {"name": (None, "Ann")}

        author.name = "Bo"
        assert author.changed_attributes == {"name": "Ann"}
        assert author.has_changes()

        author.name = "Ann"
        assert author.changed == []

    @pytest.mark.asyncio
    async def test_reload_discards_changes(self, db):
        author = await Author.create(name="Ann")
        author.name = "Changed"
        await author.reload()
        assert author.name == "Ann"
        assert not author.has_changes()

    @pytest.mark.asyncio
    async def test_update(self, db):
        author = await Author.create(name="Ann")
        assert await author.update(name="Zed") is True
        assert (await Author.find(author.id)).name == "Zed"
        assert author.previous_changes == {"name": ("Ann", "Zed")}

    @pytest.mark.asyncio
    async def test_changed_primary_key_is_written(self, db):
        author = await Author.create(name="Ann")
        old_id = author.id
        author.id = 99
        assert await author.save() is True
        assert await Author.where(id=old_id).count() == 0
        assert (await Author.find(99)).name == "Ann"
        assert author.changed == []

    @pytest.mark.asyncio
    async def test_to_dict(self, db):
        author = await Author.create(name="Ann")
        assert author.to_dict() == {"id": author.id, "name": "Ann", "email": None}
        assert author.to_dict(exclude=["email"]) == {"id": author.id, "name": "Ann"}

        post = await Post.create(title="t", author=author)
        data = post.to_dict()
        assert isinstance(data["created_at"], str)
        assert data["lock_version"] == 0


class TestValidation:
    """Field, association, declarative and hook validation."""

    @pytest.mark.asyncio
    async def test_blank_required_field(self, db):
        author = Author()
        assert await author.save() is False
        assert author.errors["name"] == ["can't be blank"]
        assert author.is_new_record
        assert await Author.count() == 0

    @pytest.mark.asyncio
    async def test_save_or_raise(self, db):
        with pytest.raises(ValidationError) as exc_info:
            await Author().save_or_raise()
        assert exc_info.value.errors == {"name": ["can't be blank"]}
        assert exc_info.value.code == "VALIDATION_FAILED"

    @pytest.mark.asyncio
    async def test_create_or_raise(self, db):
        with pytest.raises(ValidationError):
            await Author.create_or_raise(name="root")

    @pytest.mark.asyncio
    async def test_required_owner(self, db):
        comment = Comment(body="hi")
        assert await comment.save() is False
        assert comment.errors["post_id"] == ["can't be blank"]

    @pytest.mark.asyncio
    async def test_validate_hook(self, db):
        author = Author(name="root")
        assert await author.is_valid() is False
        assert author.errors["name"] == ["is reserved"]

    @pytest.mark.asyncio
    async def test_uniqueness(self, db):
        first = await Author.create(name="Ann", email="ann@example.com")
        duplicate = Author(name="Other", email="ann@example.com")
        assert await duplicate.save() is False
        assert duplicate.errors["email"] == ["has already been taken"]

        first.name = "Annie"
        assert await first.save() is True

    @pytest.mark.asyncio
    async def test_format(self, db):
        author = Author(name="Ann", email="not-an-email")
        assert await author.is_valid() is False
        assert author.errors["email"] == ["is invalid"]

    @pytest.mark.asyncio
    async def test_declarative_validators(self, db):
        product = Product(name="toolong", price=0, sku="ABC")
        assert await product.is_valid() is False
        assert product.errors.to_dict() == {
            "name": ["is too long (maximum is 5 characters)"],
            "price": ["must be greater than 0"],
            "sku": ["is the wrong length (should be 4 characters)"],
        }
        assert "Price must be greater than 0" in product.errors.full_messages()

    @pytest.mark.asyncio
    async def test_presence_and_before_validation(self, db):
        blank = Product(name="   ")
        assert await blank.is_valid() is False
        assert blank.errors["name"] == ["can't be blank"]

        padded = Product(name="  ab  ", price=2.5)
        assert await padded.save() is True
        assert padded.name == "ab"

    @pytest.mark.asyncio
    async def test_field_validators(self, db):
        product = Product(name="ok", sku="abcd")
        assert await product.is_valid() is False
        assert product.errors["sku"] == ["must be uppercase"]

    @pytest.mark.asyncio
    async def test_validation_coerces_values(self, db):
        gadget = Gadget(name="g", flagged="yes")
        assert await gadget.save() is True
        assert gadget.flagged is True

        product = Product(name="ok", price="2.5")
        assert await product.save() is True
        assert product.price == 2.5

        author = await Author.create(name="Ann")
        post = Post(title="t", author=author, created_at="2024-01-02T03:04:05")
        assert await post.save() is True
        assert post.created_at == datetime.datetime(2024, 1, 2, 3, 4, 5)

    @pytest.mark.asyncio
    async def test_errors_cleared_between_runs(self, db):
        author = Author()
        await author.is_valid()
        author.name = "Ann"
        assert await author.is_valid() is True
        assert not author.errors


class TestCallbacks:
    """Phase order, conditions and failure handling."""

    @pytest.mark.asyncio
    async def test_create_order(self, db):
        await Widget.create(name="w")
        assert EVENTS == [
            "before_validation",
            "after_validation",
            "before_save",
            "before_create",
            "after_create",
            "after_save",
            "after_commit",
        ]

    @pytest.mark.asyncio
    async def test_update_order(self, db):
        widget = await Widget.create(name="w")
        EVENTS.clear()
        await widget.update(name="v")
        assert EVENTS == [
            "before_validation",
            "after_validation",
            "before_save",
            "before_update",
            "after_update",
            "after_save",
            "after_commit",
        ]

    @pytest.mark.asyncio
    async def test_update_without_changes_writes_nothing(self, db):
        widget = await Widget.create(name="w")
        EVENTS.clear()
        assert await widget.save() is True
        assert "after_update" not in EVENTS
        assert "after_commit" not in EVENTS

    @pytest.mark.asyncio
    async def test_destroy_order(self, db):
        widget = await Widget.create(name="w")
        EVENTS.clear()
        assert await widget.destroy() is True
        assert EVENTS == ["before_destroy", "after_destroy", "after_commit"]
        assert widget.is_destroyed

    @pytest.mark.asyncio
    async def test_commit_waits_for_outer_transaction(self, db):
        async with db.transaction():
            await Widget.create(name="w")
            assert "after_save" in EVENTS
            assert "after_commit" not in EVENTS
        assert EVENTS[-1] == "after_commit"

    @pytest.mark.asyncio
    async def test_failing_after_save_rolls_back(self, db):
        widget = Widget(name="w")
        widget.explode = True
        with pytest.raises(RuntimeError):
            await widget.save()
        assert EVENTS[-1] == "after_rollback"
        assert EVENTS.count("after_rollback") == 1
        assert "after_commit" not in EVENTS
        assert widget.is_new_record
        assert widget.pk is None
        assert await Widget.count() == 0

    @pytest.mark.asyncio
    async def test_failing_update_restores_state(self, db):
        widget = await Widget.create(name="old")
        widget.name = "new"
        widget.explode = True
        with pytest.raises(RuntimeError):
            await widget.save()
        assert widget.name == "new"
        assert widget.changed == ["name"]
        assert (await Widget.find(widget.id)).name == "old"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "phase", ["before_validation", "validate", "after_validation", "before_save", "before_create"]
    )
    async def test_error_before_insert_runs_after_rollback(self, db, phase):
        fuse = Fuse(name="f")
        fuse.trip = phase
        with pytest.raises(RuntimeError, match=phase):
            await fuse.save()
        assert EVENTS == ["after_rollback"]
        assert fuse.is_new_record
        assert await Fuse.count() == 0

    @pytest.mark.asyncio
    async def test_error_before_update_runs_after_rollback(self, db):
        fuse = await Fuse.create(name="old")
        fuse.name = "new"
        fuse.trip = "before_update"
        with pytest.raises(RuntimeError):
            await fuse.save()
        assert EVENTS == ["after_rollback"]
        assert (await Fuse.find(fuse.id)).name == "old"

    @pytest.mark.asyncio
    async def test_error_before_destroy_runs_after_rollback(self, db):
        fuse = await Fuse.create(name="f")
        fuse.trip = "before_destroy"
        with pytest.raises(RuntimeError):
            await fuse.destroy()
        assert EVENTS == ["after_rollback"]
        assert fuse.is_persisted
        assert await Fuse.count() == 1

    @pytest.mark.asyncio
    async def test_invalid_record_runs_no_rollback_callbacks(self, db):
        assert await Fuse().save() is False
        assert EVENTS == []

    def test_unknown_phase(self):
        with pytest.raises(ValueError):
            Widget.register_callback("before_lunch", lambda record: None)

    @pytest.mark.asyncio
    async def test_conditions(self, db):
        gadget = await Gadget.create(name="g")
        assert EVENTS == ["unless"]

        EVENTS.clear()
        await gadget.update(flagged=True)
        assert EVENTS == ["if", "updated", "on_update"]

    @pytest.mark.asyncio
    async def test_after_commit_errors_are_logged(self, db, caplog):
        gadget = await Gadget.create(name="bad")
        assert gadget.is_persisted
        assert "fail_commit" in caplog.text

    @pytest.mark.asyncio
    async def test_subclass_inherits_callbacks(self, db):
        await SpecialGadget.create(name="s")
        assert EVENTS == ["unless", "special"]

        EVENTS.clear()
        await Gadget.create(name="g")
        assert EVENTS == ["unless"]


class TestWriteGuards:
    """Read-only, destroyed and unsaved records."""

    @pytest.mark.asyncio
    async def test_readonly_record(self, db):
        await Author.create(name="Ann")
        author = await Author.query().readonly().first()
        author.name = "Bo"
        with pytest.raises(ReadOnlyRecordError):
            await author.save()
        with pytest.raises(ReadOnlyRecordError):
            await author.destroy()

    @pytest.mark.asyncio
    async def test_rejected_update_leaves_record_clean(self, db):
        await Author.create(name="Ann")
        author = await Author.query().readonly().first()
        with pytest.raises(ReadOnlyRecordError):
            await author.update(name="Bo")
        with pytest.raises(ReadOnlyRecordError):
            await author.update_or_raise(name="Bo")
        assert author.name == "Ann"
        assert author.changed == []

    @pytest.mark.asyncio
    async def test_readonly_new_record(self, db):
        with pytest.raises(ReadOnlyRecordError):
            await Author(name="x").readonly().save()

    @pytest.mark.asyncio
    async def test_destroyed_record_cannot_be_saved(self, db):
        author = await Author.create(name="Ann")
        await author.destroy()
        with pytest.raises(ReadOnlyRecordError):
            await author.save()

    @pytest.mark.asyncio
    async def test_destroying_new_record(self, db):
        author = Author(name="Ann")
        assert await author.destroy() is False
        with pytest.raises(RecordNotSavedError):
            await author.destroy_or_raise()


class TestTimestampsAndLocking:
    """created_at / updated_at and lock_version."""

    @pytest.mark.asyncio
    async def test_timestamps(self, db):
        author = await Author.create(name="Ann")
        post = await Post.create(title="t", author=author)
        assert isinstance(post.created_at, datetime.datetime)
        assert isinstance(post.updated_at, datetime.datetime)

        created = post.created_at
        await post.update(title="u")
        assert post.created_at == created
        assert post.updated_at >= created

        loaded = await Post.find(post.id)
        assert loaded.created_at == created

    @pytest.mark.asyncio
    async def test_lock_version_increments(self, db):
        author = await Author.create(name="Ann")
        post = await Post.create(title="t", author=author)
        assert post.lock_version == 0
        await post.update(title="u")
        assert post.lock_version == 1
        assert await Post.where(id=post.id).pick("lock_version") == 1

    @pytest.mark.asyncio
    async def test_stale_update(self, db):
        author = await Author.create(name="Ann")
        post = await Post.create(title="t", author=author)
        first = await Post.find(post.id)
        second = await Post.find(post.id)

        first.title = "first"
        assert await first.save() is True

        second.title = "second"
        with pytest.raises(StaleObjectError):
            await second.save()
        assert second.lock_version == 0

        await second.reload()
        assert second.title == "first"
        assert second.lock_version == 1

    @pytest.mark.asyncio
    async def test_stale_destroy(self, db):
        author = await Author.create(name="Ann")
        post = await Post.create(title="t", author=author)
        stale = await Post.find(post.id)
        await post.update(title="u")
        with pytest.raises(StaleObjectError):
            await stale.destroy()
        assert await Post.count() == 1


class TestDependents:
    """dependent rules run after the owner's DELETE."""

    @pytest.mark.asyncio
    async def test_destroy_cascades(self, db):
        author = await Author.create(name="Ann")
        other = await Author.create(name="Bob")
        for title in ("a", "b"):
            post = await Post.create(title=title, author=author)
            await Comment.create(body="c", post=post)
        kept = await Post.create(title="kept", author=other)
        await Comment.create(body="k", post=kept)
        await Note.create(text="n", author=author)

        assert await author.destroy() is True

        assert await Post.pluck("title") == ["kept"]
        assert await Comment.count() == 1
        assert await Note.count() == 1
        assert await Note.where(author_id=None).count() == 1
        assert await Author.pluck("name") == ["Bob"]


class TestTransactions:
    """Rollback restores in-memory state."""

    @pytest.mark.asyncio
    async def test_explicit_rollback(self, db):
        async with db.transaction() as tx:
            widget = await Widget.create(name="w")
            assert widget.is_persisted
            tx.rollback()
        assert widget.is_new_record
        assert widget.pk is None
        assert EVENTS[-1] == "after_rollback"
        assert await Widget.count() == 0

    @pytest.mark.asyncio
    async def test_exception_rolls_back_everything(self, db):
        with pytest.raises(RuntimeError):
            async with Author.transaction():
                author = await Author.create(name="Ann")
                await Note.create(text="n", author=author)
                raise RuntimeError("abort")
        assert author.is_new_record
        assert await Author.count() == 0
        assert await Note.count() == 0

    @pytest.mark.asyncio
    async def test_rolled_back_destroy(self, db):
        author = await Author.create(name="Ann")
        async with db.transaction() as tx:
            await author.destroy()
            assert author.is_destroyed
            tx.rollback()
        assert author.is_persisted
        assert await Author.count() == 1

    @pytest.mark.asyncio
    async def test_other_tasks_wait_for_an_open_transaction(self, db):
        opened = asyncio.Event()
        release = asyncio.Event()

        async def aborted_block():
            with pytest.raises(RuntimeError):
                async with db.transaction():
                    await Widget.create(name="A")
                    opened.set()
                    await release.wait()
                    raise RuntimeError("abort")

        async def concurrent_save():
            await opened.wait()
            assert not db.in_transaction
            widget = Widget(name="B")
            saving = asyncio.create_task(widget.save())
            await asyncio.sleep(0.05)
            assert not saving.done()
            release.set()
            assert await saving is True
            return widget

        _, widget = await asyncio.gather(aborted_block(), concurrent_save())
        assert widget.is_persisted
        assert await Widget.pluck("name") == ["B"]
