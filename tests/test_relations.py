"""
Association loading and writing against SQLite: through, many-to-many and
polymorphic associations, plus build / create / set helpers.
"""

import pytest
import pytest_asyncio

from quarry.faults import AssociationNotFoundError, UnsupportedJoinError
from quarry.models import (
    BelongsTo,
    CharField,
    HasAndBelongsToMany,
    HasMany,
    HasOne,
    Model,
    SchemaRegistry,
    TextField,
)


registry = SchemaRegistry("relations")


class Base(Model):
    class Meta:
        abstract = True
        registry = registry


class User(Base):
    table = "users"

    name = CharField()
    posts = HasMany("Post")
    profile = HasOne("Profile")
    comments = HasMany("Comment", through="posts")
    pictures = HasMany("Picture", as_="imageable")


class Profile(Base):
    table = "profiles"

    bio = TextField(null=True)
    user = BelongsTo("User", optional=True)


class Post(Base):
    table = "posts"

    title = CharField()
    user = BelongsTo("User")
    comments = HasMany("Comment")
    tags = HasAndBelongsToMany("Tag")
    pictures = HasMany("Picture", as_="imageable")


class Comment(Base):
    table = "comments"

    body = TextField()
    post = BelongsTo("Post")


class Tag(Base):
    table = "tags"

    name = CharField()
    posts = HasAndBelongsToMany("Post")


class Picture(Base):
    table = "pictures"

    url = CharField()
    imageable = BelongsTo(polymorphic=True, optional=True)


SCHEMA = [
    "CREATE TABLE users (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL)",
    "CREATE TABLE profiles (id INTEGER PRIMARY KEY AUTOINCREMENT, bio TEXT, user_id INTEGER)",
    "CREATE TABLE posts (id INTEGER PRIMARY KEY AUTOINCREMENT, title TEXT NOT NULL, user_id INTEGER)",
    "CREATE TABLE comments (id INTEGER PRIMARY KEY AUTOINCREMENT, body TEXT NOT NULL, post_id INTEGER)",
    "CREATE TABLE tags (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL)",
    "CREATE TABLE posts_tags (post_id INTEGER NOT NULL, tag_id INTEGER NOT NULL)",
    "CREATE TABLE pictures (id INTEGER PRIMARY KEY AUTOINCREMENT, url TEXT NOT NULL, "
    "imageable_id INTEGER, imageable_type TEXT)",
]


@pytest_asyncio.fixture
async def db(memory_db):
    for statement in SCHEMA:
        await memory_db.execute(statement)
    registry.bind(memory_db)
    return memory_db


@pytest_asyncio.fixture
async def data(db):
    ann = await User.create_or_raise(name="Ann")
    bob = await User.create_or_raise(name="Bob")
    hello = await Post.create_or_raise(title="hello", user=ann)
    world = await Post.create_or_raise(title="world", user=ann)
    bobs = await Post.create_or_raise(title="bobs", user=bob)
    for body, post in (("c1", hello), ("c2", hello), ("c3", world), ("c4", bobs)):
        await Comment.create_or_raise(body=body, post=post)
    return {"ann": ann, "bob": bob, "hello": hello, "world": world, "bobs": bobs}


class TestThrough:
    """has-many through an intermediate association."""

    @pytest.mark.asyncio
    async def test_related(self, data):
        comments = await data["ann"].related("comments")
        assert sorted(c.body for c in comments) == ["c1", "c2", "c3"]
        assert all(isinstance(c, Comment) for c in comments)

    @pytest.mark.asyncio
    async def test_association_query_chains(self, data):
        query = data["ann"].association_query("comments").where({"comments.body": "c3"})
        assert await query.count() == 1

    @pytest.mark.asyncio
    async def test_preload(self, data):
        users = await User.preload("comments").order("id").all()
        assert [sorted(c.body for c in u._association_cache["comments"]) for u in users] == [
            ["c1", "c2", "c3"],
            ["c4"],
        ]

    @pytest.mark.asyncio
    async def test_join(self, data):
        names = await User.join("comments").where({"comments.body": "c4"}).pluck("users.name")
        assert names == ["Bob"]

    @pytest.mark.asyncio
    async def test_includes(self, data):
        users = await User.includes("comments").order("users.id").all()
        assert [len(u._association_cache["comments"]) for u in users] == [3, 1]

    @pytest.mark.asyncio
    async def test_cannot_build_through(self, data):
        with pytest.raises(UnsupportedJoinError):
            data["ann"].build_related("comments", body="x")
        with pytest.raises(UnsupportedJoinError):
            await data["ann"].set_related("comments", Comment(body="x"))


class TestManyToMany:
    """Join-table associations."""

    @pytest.mark.asyncio
    async def test_attach_and_related(self, data):
        python = await Tag.create_or_raise(name="python")
        sql = await Tag.create_or_raise(name="sql")
        hello = data["hello"]

        await hello.attach("tags", python, sql.id)
        await hello.attach("tags", python)
        assert await db_count(hello, "posts_tags") == 2

        tags = await hello.related("tags")
        assert sorted(t.name for t in tags) == ["python", "sql"]
        assert [p.title for p in await python.related("posts")] == ["hello"]

    @pytest.mark.asyncio
    async def test_detach_and_clear(self, data):
        a = await Tag.create_or_raise(name="a")
        b = await Tag.create_or_raise(name="b")
        c = await Tag.create_or_raise(name="c")
        hello = data["hello"]
        await hello.attach("tags", a, b, c)

        assert await hello.detach("tags", a) == 1
        assert await hello.detach("tags") == 0
        assert sorted(t.name for t in await hello.related("tags")) == ["b", "c"]

        assert await hello.clear("tags") == 2
        assert await hello.related("tags") == []
        assert await Tag.count() == 3

    @pytest.mark.asyncio
    async def test_preload(self, data):
        tag = await Tag.create_or_raise(name="t")
        await data["hello"].attach("tags", tag)
        await data["bobs"].attach("tags", tag)

        posts = await Post.preload("tags").order("id").all()
        assert [[t.name for t in p._association_cache["tags"]] for p in posts] == [["t"], [], ["t"]]

    @pytest.mark.asyncio
    async def test_join(self, data):
        tag = await Tag.create_or_raise(name="t")
        await data["world"].attach("tags", tag)
        titles = await Post.join("tags").where({"tags.name": "t"}).pluck("posts.title")
        assert titles == ["world"]

    @pytest.mark.asyncio
    async def test_create_related_attaches(self, data):
        tag = await data["hello"].create_related("tags", name="fresh")
        assert tag.is_persisted
        assert [t.name for t in await data["hello"].related("tags")] == ["fresh"]

    @pytest.mark.asyncio
    async def test_set_related_attaches(self, data):
        tag = await Tag.create_or_raise(name="t")
        await data["world"].set_related("tags", tag)
        assert [t.id for t in await data["world"].related("tags")] == [tag.id]

    @pytest.mark.asyncio
    async def test_destroy_removes_join_rows(self, data):
        tag = await Tag.create_or_raise(name="t")
        await data["hello"].attach("tags", tag)
        await data["hello"].destroy()
        assert await db_count(data["hello"], "posts_tags") == 0
        assert await Tag.count() == 1

    @pytest.mark.asyncio
    async def test_attach_needs_many_to_many(self, data):
        with pytest.raises(UnsupportedJoinError):
            await data["ann"].attach("posts", data["bobs"])


class TestPolymorphic:
    """Polymorphic belongs-to and its inverse has-many."""

    @pytest_asyncio.fixture
    async def pictures(self, data):
        avatar = await Picture.create_or_raise(url="avatar.png", imageable=data["ann"])
        cover = await Picture.create_or_raise(url="cover.png", imageable=data["hello"])
        loose = await Picture.create_or_raise(url="loose.png")
        return avatar, cover, loose

    @pytest.mark.asyncio
    async def test_discriminator_written(self, pictures):
        avatar, cover, _ = pictures
        assert (avatar.imageable_type, avatar.imageable_id) == ("User", 1)
        assert (cover.imageable_type, cover.imageable_id) == ("Post", 1)

    @pytest.mark.asyncio
    async def test_related_resolves_class_per_record(self, data, pictures):
        avatar, cover, loose = pictures
        fresh = await Picture.find(avatar.id)
        assert await fresh.related("imageable") == data["ann"]
        fresh = await Picture.find(cover.id)
        owner = await fresh.related("imageable")
        assert isinstance(owner, Post)
        assert owner.title == "hello"
        assert await loose.related("imageable") is None

    @pytest.mark.asyncio
    async def test_inverse_filters_by_type(self, data, pictures):
        # User 1 and Post 1 share an id; the discriminator keeps them apart
        assert [p.url for p in await data["ann"].related("pictures")] == ["avatar.png"]
        assert [p.url for p in await data["hello"].related("pictures")] == ["cover.png"]

    @pytest.mark.asyncio
    async def test_preload(self, pictures):
        loaded = await Picture.preload("imageable").order("id").all()
        owners = [p._association_cache["imageable"] for p in loaded]
        assert isinstance(owners[0], User)
        assert isinstance(owners[1], Post)
        assert owners[2] is None

    @pytest.mark.asyncio
    async def test_includes_falls_back_to_preload(self, pictures):
        query = Picture.includes("imageable").order("id")
        assert "JOIN" not in query.to_sql()
        loaded = await query.all()
        assert all(p.is_loaded("imageable") for p in loaded)

    @pytest.mark.asyncio
    async def test_preload_inverse(self, data, pictures):
        users = await User.preload("pictures").order("id").all()
        assert [[p.url for p in u._association_cache["pictures"]] for u in users] == [["avatar.png"], []]

    @pytest.mark.asyncio
    async def test_set_related(self, data, pictures):
        _, _, loose = pictures
        await loose.set_related("imageable", data["bobs"])
        assert loose.imageable_type == "Post"
        await loose.save_or_raise()
        assert [p.url for p in await data["bobs"].related("pictures")] == ["loose.png"]

    @pytest.mark.asyncio
    async def test_cannot_build_owner(self, pictures):
        with pytest.raises(UnsupportedJoinError):
            pictures[2].build_related("imageable")

    @pytest.mark.asyncio
    async def test_build_inverse(self, data):
        picture = data["bob"].build_related("pictures", url="new.png")
        assert (picture.imageable_type, picture.imageable_id) == ("User", data["bob"].id)
        assert picture.is_new_record


class TestBuildCreateSet:
    """Writing through direct associations."""

    @pytest.mark.asyncio
    async def test_build_has_many(self, data):
        ann = data["ann"]
        await ann.related("posts")
        post = ann.build_related("posts", title="draft")
        assert post.user_id == ann.id
        assert post.is_new_record
        assert post in ann._association_cache["posts"]

    @pytest.mark.asyncio
    async def test_create_has_many(self, data):
        post = await data["bob"].create_related("posts", title="second")
        assert post.is_persisted
        assert await Post.where(user_id=data["bob"].id).count() == 2

    @pytest.mark.asyncio
    async def test_build_has_one(self, data):
        profile = data["ann"].build_related("profile", bio="hi")
        assert profile.user_id == data["ann"].id
        assert await data["ann"].related("profile") is profile

    @pytest.mark.asyncio
    async def test_create_belongs_to(self, db):
        post = Post(title="orphan")
        owner = await post.create_related("user", name="Cy")
        assert owner.is_persisted
        assert post.user_id == owner.id
        assert await post.save() is True

    @pytest.mark.asyncio
    async def test_set_belongs_to(self, data):
        post = data["bobs"]
        await post.set_related("user", data["ann"])
        assert post.user_id == data["ann"].id
        assert post.changed == ["user_id"]
        await post.save_or_raise()
        assert await data["ann"].association_query("posts").count() == 3

    @pytest.mark.asyncio
    async def test_set_has_many(self, data):
        moved = data["bobs"]
        await data["ann"].set_related("posts", moved)
        assert (await Post.find(moved.id)).user_id == data["ann"].id

    @pytest.mark.asyncio
    async def test_set_has_one(self, data):
        profile = await Profile.create_or_raise(bio="b")
        await data["bob"].set_related("profile", profile)
        assert profile.user_id == data["bob"].id
        assert (await User.preload("profile").find(data["bob"].id))._association_cache["profile"] == profile

    @pytest.mark.asyncio
    async def test_set_has_one_requires_record(self, data):
        with pytest.raises(AssociationNotFoundError):
            await data["bob"].set_related("profile", None)

    @pytest.mark.asyncio
    async def test_new_record_collections_are_empty(self):
        user = User(name="new")
        assert await user.related("posts") == []
        assert await user.related("profile") is None

    @pytest.mark.asyncio
    async def test_owner_assignment_in_constructor(self, data):
        post = Post(title="x", user=data["bob"])
        assert post.user_id == data["bob"].id
        assert await post.related("user") is data["bob"]


async def db_count(record, table):
    return await type(record)._registry.database.scalar(f"SELECT COUNT(*) FROM {table}")
