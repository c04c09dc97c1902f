"""Static farm module table and the table allow-list derived from it.

A module is a named group of tables jointly gated by one access check.
The union of all module tables is the allow-list consulted by the schema
introspector -- a table that is not listed here can never be queried.

Usage:
    from farmsync.config.modules import ModuleRegistry, DEFAULT_MODULES

    registry = ModuleRegistry(DEFAULT_MODULES)
    registry.is_allowed_table("tasks")          # True
    registry.get_entity_by_table("TASKS", "tasks").label   # "Tasks"
"""

from pydantic import BaseModel, Field


class EntityDef(BaseModel):
    """One table within a module, paired with a display label."""

    table: str
    label: str


class ModuleDef(BaseModel):
    """Named group of entities sharing one access-control gate."""

    module_key: str
    name: str
    entities: list[EntityDef] = Field(default_factory=list)


def _module(key: str, name: str, entities: list[tuple[str, str]]) -> ModuleDef:
    return ModuleDef(
        module_key=key,
        name=name,
        entities=[EntityDef(table=t, label=label) for t, label in entities],
    )


DEFAULT_MODULES: list[ModuleDef] = [
    _module("BROILERS", "Broilers", [
        ("broiler_batches", "Batches"),
        ("broiler_daily_logs", "Daily Logs"),
        ("broiler_feed_logs", "Feed Logs"),
        ("health_records", "Health Records"),
        ("broiler_vaccinations", "Vaccinations"),
        ("broiler_harvests", "Harvests"),
        ("broiler_misc_costs", "Misc Costs"),
        ("broiler_projections", "Projections"),
        ("housing_units", "Housing Units"),
    ]),
    _module("LAYERS", "Layers", [
        ("layer_flocks", "Flocks"),
        ("layer_daily_logs", "Daily Logs"),
        ("layer_sales", "Sales"),
        ("health_records", "Health Records"),
    ]),
    _module("PIGS", "Pigs", [
        ("pig_groups", "Groups"),
        ("pig_animals", "Animals"),
        ("pig_growth_logs", "Growth Logs"),
        ("pig_breeding_records", "Breeding Records"),
        ("pig_individual_weights", "Individual Weights"),
        ("pig_sales", "Sales"),
        ("pig_individual_sales", "Individual Sales"),
        ("health_records", "Health Records"),
        ("housing_units", "Housing Units"),
    ]),
    _module("AQUACULTURE", "Aquaculture", [
        ("aquaculture_ponds", "Ponds"),
        ("aquaculture_stockings", "Stockings"),
        ("aquaculture_daily_logs", "Daily Logs"),
        ("aquaculture_sampling_logs", "Sampling Logs"),
        ("aquaculture_harvests", "Harvests"),
    ]),
    _module("CROPS", "Crops", [
        ("crop_fields", "Fields"),
        ("crop_batches", "Batches"),
        ("crop_operations", "Operations"),
        ("crop_harvests", "Harvests"),
        ("crop_projections", "Projections"),
    ]),
    _module("INVENTORY", "Inventory", [
        ("items", "Items"),
        ("stock_transactions", "Stock Transactions"),
        ("purchase_orders", "Purchase Orders"),
        ("purchase_order_items", "Purchase Order Items"),
        ("suppliers", "Suppliers"),
        ("inventory_feed_assignments", "Feed Assignments"),
        ("inventory_item_assignments", "Item Assignments"),
    ]),
    _module("SALES", "Sales POS", [
        ("sales_pos_orders", "POS Orders"),
        ("module_sales", "Module Sales"),
        ("invoices", "Invoices"),
        ("invoice_items", "Invoice Items"),
        ("customers", "Customers"),
    ]),
    _module("EXPENSES", "Expenses", [("expenses", "Expenses")]),
    _module("TASKS", "Tasks", [("tasks", "Tasks")]),
    _module("FINANCE", "Finance", [
        ("finance_transactions", "Transactions"),
        ("chart_accounts", "Chart Accounts"),
        ("budgets", "Budgets"),
        ("payroll_runs", "Payroll Runs"),
        ("payroll_items", "Payroll Items"),
        ("invoices", "Invoices"),
        ("module_sales", "Module Sales"),
        ("sales_pos_orders", "POS Orders"),
    ]),
    _module("EQUIPMENT", "Equipment", [
        ("equipment", "Equipment"),
        ("housing_units", "Housing Units"),
    ]),
    _module("REPORTS", "Reports", [
        ("report_schedules", "Report Schedules"),
        ("module_benchmarks", "Benchmarks"),
        ("module_goals", "Goals"),
        ("module_risks", "Risks"),
        ("module_ideas", "Improvement Ideas"),
        ("module_idea_votes", "Idea Votes"),
        ("finance_transactions", "Finance Transactions"),
        ("stock_transactions", "Stock Transactions"),
        ("audit_log", "Audit Log"),
    ]),
    _module("ISSUES", "Issue Reporting", [
        ("issue_reports", "Issue Reports"),
        ("issue_report_events", "Issue Events"),
        ("issue_report_media", "Issue Media"),
    ]),
    _module("MESSAGES", "Messaging", [
        ("user_messages", "Messages"),
        ("user_notifications", "Notifications"),
        ("notification_configs", "Notification Configs"),
    ]),
    _module("SETTINGS", "Settings", [
        ("farms", "Farms"),
        ("farm_users", "Farm Users"),
        ("farm_modules", "Farm Modules"),
        ("ui_preferences", "UI Preferences"),
        ("system_configs", "System Configs"),
        ("organizations", "Organizations"),
        ("alerts", "Alerts"),
        ("module_automations", "Module Automations"),
    ]),
    _module("HR_ACCESS", "HR Access", [
        ("employees", "Employees"),
        ("payroll_runs", "Payroll Runs"),
        ("payroll_items", "Payroll Items"),
        ("user_documents", "User Documents"),
        ("user_module_access", "User Module Access"),
        ("tasks", "Tasks"),
        ("roles", "Roles"),
        ("approval_requests", "Approval Requests"),
        ("mobile_module_access_overrides", "Mobile Access Overrides"),
    ]),
]


def normalize_module_key(value: object) -> str:
    """Upper-case and trim a module key (``None`` becomes ``""``)."""
    return str(value or "").strip().upper()


class ModuleRegistry:
    """Read-only lookup over a fixed list of module definitions.

    Args:
        modules: Module definitions, in display order.  Defaults to
            ``DEFAULT_MODULES``.
    """

    def __init__(self, modules: list[ModuleDef] | None = None) -> None:
        self._modules: tuple[ModuleDef, ...] = tuple(
            DEFAULT_MODULES if modules is None else modules
        )
        self._by_key: dict[str, ModuleDef] = {
            normalize_module_key(m.module_key): m for m in self._modules
        }
        # First module wins when a table is shared
        self._table_to_module: dict[str, str] = {}
        for module in self._modules:
            for entity in module.entities:
                self._table_to_module.setdefault(entity.table, module.module_key)

    def modules(self) -> list[ModuleDef]:
        return list(self._modules)

    def module_keys(self) -> list[str]:
        return [m.module_key for m in self._modules]

    def get_module_by_key(self, module_key: str | None) -> ModuleDef | None:
        return self._by_key.get(normalize_module_key(module_key))

    def get_entity_by_table(
        self, module_key: str | None, table: str | None
    ) -> EntityDef | None:
        module = self.get_module_by_key(module_key)
        if module is None:
            return None
        for entity in module.entities:
            if entity.table == table:
                return entity
        return None

    def table_to_module_map(self) -> dict[str, str]:
        return dict(self._table_to_module)

    def is_allowed_table(self, table: str | None) -> bool:
        return (table or "") in self._table_to_module
