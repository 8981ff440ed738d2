"""Tests for bound model handles."""

import pytest

from tenantdb.connections.manager import ConnectionManager
from tenantdb.registry.handles import ModelHandle, bind_schema
from tenantdb.registry.schemas import (
    FieldSpec,
    FieldType,
    SchemaDefinition,
    default_schemas,
    master_data_schema,
)

WIDGETS = SchemaDefinition(
    collection="widgets",
    fields=(
        FieldSpec(name="name", required=True, unique=True),
        FieldSpec(name="size", type=FieldType.INTEGER, default=1),
        FieldSpec(name="tags", type=FieldType.JSON, default=[]),
    ),
    timestamps=True,
)


class TestBindSchema:
    """Tests for binding schemas to tenant connections."""

    @pytest.mark.anyio
    async def test_bind_creates_table(
        self, connection_manager: ConnectionManager
    ) -> None:
        """Test binding creates the collection in the tenant database."""
        connection = await connection_manager.get_connection("acme")

        handle = await bind_schema(connection, "Widget", WIDGETS)

        assert handle.collection_name == "widgets"
        assert handle.tenant_id == "acme"
        assert handle.materialized
        assert connection.models["Widget"] is handle
        assert await handle.count() == 0

    @pytest.mark.anyio
    async def test_rebind_reuses_handle(
        self, connection_manager: ConnectionManager
    ) -> None:
        """Test binding the same schema twice returns the same handle."""
        connection = await connection_manager.get_connection("acme")

        first = await bind_schema(connection, "Widget", WIDGETS)
        second = await bind_schema(connection, "Widget", WIDGETS)

        assert first is second

    @pytest.mark.anyio
    async def test_changed_schema_rebinds(
        self, connection_manager: ConnectionManager
    ) -> None:
        """Test a different schema under the same name gets a new handle."""
        connection = await connection_manager.get_connection("acme")
        first = await bind_schema(connection, "Widget", WIDGETS)

        second = await bind_schema(
            connection, "Widget", WIDGETS.extend("gizmos", FieldSpec(name="color"))
        )

        assert second is not first
        assert second.collection_name == "gizmos"

    @pytest.mark.anyio
    async def test_bind_without_create(
        self, connection_manager: ConnectionManager
    ) -> None:
        """Test binding without create on an existing table is usable."""
        connection = await connection_manager.get_connection("acme")
        await bind_schema(connection, "Widget", WIDGETS)
        await connection_manager.close_connection("acme")

        reopened = await connection_manager.get_connection("acme")
        handle = await bind_schema(reopened, "Widget", WIDGETS, create=False)

        assert not handle.materialized
        assert await handle.count() == 0

    @pytest.mark.anyio
    async def test_bind_all_default_and_master_schemas(
        self, connection_manager: ConnectionManager
    ) -> None:
        """Test every built-in schema materializes side by side."""
        connection = await connection_manager.get_connection("acme")
        schemas = {
            **default_schemas(),
            "Vendor": master_data_schema("vendors"),
            "PlantType": master_data_schema("plant_types"),
        }

        for name, schema in schemas.items():
            await bind_schema(connection, name, schema)

        assert set(connection.models) == set(schemas)


class TestModelHandle:
    """Tests for handle queries."""

    @pytest.mark.anyio
    async def test_insert_and_find(
        self, connection_manager: ConnectionManager
    ) -> None:
        """Test rows written through a handle are read back with defaults."""
        connection = await connection_manager.get_connection("acme")
        handle = await bind_schema(connection, "Widget", WIDGETS)

        first_id = await handle.insert({"name": "sprocket"})
        await handle.insert({"name": "flange", "size": 3, "tags": ["steel"]})

        rows = await handle.find()
        assert [r["name"] for r in rows] == ["sprocket", "flange"]
        assert rows[0]["id"] == first_id
        assert rows[0]["size"] == 1
        assert rows[0]["tags"] == []
        assert rows[0]["created_at"] is not None
        assert rows[1]["tags"] == ["steel"]

    @pytest.mark.anyio
    async def test_filters(self, connection_manager: ConnectionManager) -> None:
        """Test equality filters, limits and find_one."""
        connection = await connection_manager.get_connection("acme")
        handle = await bind_schema(connection, "Widget", WIDGETS)
        for name, size in (("a", 1), ("b", 2), ("c", 2)):
            await handle.insert({"name": name, "size": size})

        assert await handle.count(size=2) == 2
        assert len(await handle.find(limit=1, size=2)) == 1
        found = await handle.find_one(name="c")
        assert found is not None and found["size"] == 2
        assert await handle.find_one(name="missing") is None

    @pytest.mark.anyio
    async def test_unknown_filter_field(
        self, connection_manager: ConnectionManager
    ) -> None:
        """Test filtering on an undeclared field is rejected."""
        connection = await connection_manager.get_connection("acme")
        handle = await bind_schema(connection, "Widget", WIDGETS)

        with pytest.raises(ValueError, match="Unknown field"):
            await handle.count(colour="red")
        with pytest.raises(ValueError, match="Unknown field"):
            await handle.insert({"name": "x", "colour": "red"})

    @pytest.mark.anyio
    async def test_tenants_do_not_share_rows(
        self, connection_manager: ConnectionManager
    ) -> None:
        """Test each tenant's handle reads only its own database."""
        acme = await bind_schema(
            await connection_manager.get_connection("acme"), "Widget", WIDGETS
        )
        globex = await bind_schema(
            await connection_manager.get_connection("globex"), "Widget", WIDGETS
        )

        await acme.insert({"name": "only-acme"})

        assert await acme.count() == 1
        assert await globex.count() == 0

    @pytest.mark.anyio
    async def test_equality(self, connection_manager: ConnectionManager) -> None:
        """Test handles compare by model, collection and connection."""
        acme = await connection_manager.get_connection("acme")
        globex = await connection_manager.get_connection("globex")

        acme_widget = await bind_schema(acme, "Widget", WIDGETS)
        globex_widget = await bind_schema(globex, "Widget", WIDGETS)
        twin = ModelHandle("Widget", WIDGETS, acme_widget.table, acme)

        assert acme_widget == twin
        assert hash(acme_widget) == hash(twin)
        assert acme_widget != globex_widget
        assert "acme" in repr(acme_widget)
