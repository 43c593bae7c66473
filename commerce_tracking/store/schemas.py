"""
Backing-table definitions

Column order is the wire contract with the spreadsheet service: rows are
written and read positionally, so headers here must never be reordered.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from .a1 import column_letter, quote_sheet


@dataclass(frozen=True)
class Table:
    """One sheet inside a spreadsheet, with a header row at row 1"""

    name: str
    headers: Sequence[str]

    @property
    def width(self) -> int:
        return len(self.headers)

    @property
    def last_column(self) -> str:
        return column_letter(self.width)

    @property
    def full_range(self) -> str:
        return f"{quote_sheet(self.name)}!A:{self.last_column}"

    @property
    def data_range(self) -> str:
        return f"{quote_sheet(self.name)}!A2:{self.last_column}"

    @property
    def header_range(self) -> str:
        return f"{quote_sheet(self.name)}!A1:{self.last_column}1"

    def row_range(self, row_number: int) -> str:
        """Range covering a single 1-based row"""
        return f"{quote_sheet(self.name)}!A{row_number}:{self.last_column}{row_number}"

    def index(self, header: str) -> int:
        return list(self.headers).index(header)

    def pad(self, row: Sequence) -> List[str]:
        """Right-pad a row read from the store to the table width"""
        values = ["" if value is None else str(value) for value in row[: self.width]]
        return values + [""] * (self.width - len(values))


@dataclass(frozen=True)
class Workbook:
    """The tables of one spreadsheet"""

    domain: str
    title: str
    tables: Sequence[Table] = field(default_factory=tuple)


# =============================================================================
# ORDERS
# =============================================================================

ORDERS = Table("Orders", (
    "Order ID", "Customer ID", "Customer Name", "Customer Email", "Status",
    "Total Amount", "Currency", "Payment Method", "Shipping Method",
    "Tracking Number", "Carrier", "Estimated Delivery", "Actual Delivery",
    "Items Count", "Order Items Summary", "Shipping Address", "Billing Address",
    "Created At", "Updated At", "Processing Time (Hours)", "Shipping Time (Days)",
    "Notes",
))

ORDER_ITEMS = Table("Order Items", (
    "Order ID", "Product ID", "Product Name", "SKU", "Quantity", "Unit Price",
    "Total Price", "Category", "Brand", "Variant", "Created At",
))

STATUS_HISTORY = Table("Status History", (
    "Order ID", "Previous Status", "New Status", "Changed By", "Changed At",
    "Notes", "Duration in Previous Status (Hours)",
))

SHIPPING_UPDATES = Table("Shipping Updates", (
    "Order ID", "Tracking Number", "Carrier", "Status", "Location",
    "Update Time", "Estimated Delivery", "Notes",
))

DAILY_SUMMARY = Table("Daily Summary", (
    "Date", "Total Orders", "Pending Orders", "Processing Orders",
    "Shipped Orders", "Delivered Orders", "Cancelled Orders", "Total Revenue",
    "Average Order Value", "Average Processing Time (Hours)",
    "On-Time Delivery Rate (%)",
))

# =============================================================================
# INVENTORY
# =============================================================================

PRODUCT_INVENTORY = Table("Product Inventory", (
    "Product ID", "Product Name", "SKU", "Category", "Sub Category", "Brand",
    "Current Stock", "Low Stock Threshold", "Reorder Point", "Reorder Quantity",
    "Cost Price", "Selling Price", "Compare At Price", "Supplier",
    "Last Restocked", "Stock Status", "Days of Inventory", "Turnover Rate",
))

STOCK_MOVEMENTS = Table("Stock Movements", (
    "Product ID", "SKU", "Movement Type", "Quantity", "Previous Stock",
    "New Stock", "Reason", "Order ID", "Reference", "Moved By",
    "Movement Date", "Cost Impact", "Notes",
))

INVENTORY_ALERTS = Table("Inventory Alerts", (
    "Alert ID", "Product ID", "Product Name", "SKU", "Current Stock",
    "Threshold", "Alert Type", "Status", "Created At", "Resolved At",
    "Days Low Stock", "Lost Sales Estimate",
))

SUPPLIER_PERFORMANCE = Table("Supplier Performance", (
    "Supplier Name", "Contact Email", "Products Count", "Average Lead Time (Days)",
    "On-Time Delivery Rate (%)", "Quality Score", "Last Order Date",
    "Total Orders", "Average Order Value", "Payment Terms",
))

INVENTORY_FORECASTING = Table("Inventory Forecasting", (
    "Product ID", "Product Name", "Current Stock", "Average Daily Sales",
    "Days Remaining", "Predicted Stock Out Date", "Recommended Reorder Quantity",
    "Recommended Reorder Date", "Seasonal Factor", "Trend Factor", "Safety Stock",
))

# =============================================================================
# SUPPORT
# =============================================================================

SUPPORT_TICKETS = Table("Support Tickets", (
    "Ticket ID", "Customer ID", "Customer Email", "Customer Name", "Subject",
    "Category", "Priority", "Status", "Assigned To", "Channel", "Order ID",
    "Created At", "Updated At", "First Response At", "Resolved At",
    "Response Time (Minutes)", "Resolution Time (Minutes)",
    "Satisfaction Score", "Tags", "Notes",
))

TICKET_UPDATES = Table("Ticket Updates", (
    "Ticket ID", "Update Type", "Previous Status", "New Status", "Updated By",
    "Update Time", "Message", "Internal Note", "Customer Visible",
))

SUPPORT_DAILY_METRICS = Table("Daily Metrics", (
    "Date", "Tickets Created", "Tickets Resolved", "Tickets Pending",
    "Average Response Time (Minutes)", "Average Resolution Time (Minutes)",
    "Customer Satisfaction", "SLA Compliance (%)", "Escalation Rate (%)",
))

AGENT_PERFORMANCE = Table("Agent Performance", (
    "Agent Name", "Agent Email", "Date", "Tickets Assigned", "Tickets Resolved",
    "Average Response Time (Minutes)", "Average Resolution Time (Minutes)",
    "Customer Satisfaction", "Escalated Tickets", "Active Tickets",
))

CATEGORY_ANALYSIS = Table("Category Analysis", (
    "Category", "Date", "Tickets Created", "Tickets Resolved",
    "Average Resolution Time (Hours)", "Customer Satisfaction",
    "Escalation Rate (%)", "Common Issues",
))

# =============================================================================
# ANALYTICS
# =============================================================================

USER_ACTIVITIES = Table("User Activities", (
    "User ID", "Session ID", "Activity Type", "Page URL", "Product ID",
    "Category ID", "Search Query", "Referrer", "User Agent", "IP Address",
    "Timestamp", "Duration (Seconds)", "Device Type", "Browser", "Country", "City",
))

CONVERSION_EVENTS = Table("Conversion Events", (
    "User ID", "Session ID", "Conversion Type", "Value", "Product IDs",
    "Order ID", "Timestamp", "Source", "Conversion Path", "Days to Convert",
    "Touchpoints",
))

USER_JOURNEYS = Table("User Journeys", (
    "User ID", "Session ID", "Journey Start", "Journey End", "Pages Visited",
    "Products Viewed", "Categories Viewed", "Searches Performed",
    "Cart Additions", "Checkout Started", "Purchase Completed",
    "Session Duration (Minutes)", "Bounce Rate", "Conversion Type",
))

FUNNEL_ANALYSIS = Table("Funnel Analysis", (
    "Date", "Visitors", "Product Views", "Cart Additions", "Checkout Started",
    "Purchases", "Visitor to Product Rate (%)", "Product to Cart Rate (%)",
    "Cart to Checkout Rate (%)", "Checkout to Purchase Rate (%)",
    "Overall Conversion Rate (%)",
))

COHORT_ANALYSIS = Table("Cohort Analysis", (
    "Cohort Month", "Users Count", "Month 0", "Month 1", "Month 2", "Month 3",
    "Month 6", "Month 12", "Average Revenue Per User", "Total Revenue",
))

# =============================================================================
# BUSINESS INTELLIGENCE
# =============================================================================

KPI_DASHBOARD = Table("KPI Dashboard", (
    "Date", "Total Revenue", "Total Orders", "Average Order Value",
    "Conversion Rate (%)", "Customer Acquisition Cost", "Customer Lifetime Value",
    "Gross Profit Margin (%)", "Cart Abandonment Rate (%)", "Return Rate (%)",
    "Customer Satisfaction Score", "Net Promoter Score", "Website Visitors",
    "New Customers", "Returning Customers",
))

PRODUCT_PERFORMANCE = Table("Product Performance", (
    "Product ID", "Product Name", "Category", "Brand", "Views", "Add to Cart",
    "Purchases", "Revenue", "Conversion Rate (%)", "Return Rate (%)", "Rating",
    "Review Count", "Inventory Turnover", "Profit Margin (%)", "Date",
))

CUSTOMER_SEGMENTS = Table("Customer Segments", (
    "Segment Name", "Customer Count", "Average Order Value", "Purchase Frequency",
    "Customer Lifetime Value", "Churn Rate (%)", "Revenue Contribution (%)",
    "Preferred Categories", "Average Session Duration", "Date",
))

FINANCIAL_SUMMARY = Table("Financial Summary", (
    "Date", "Gross Revenue", "Net Revenue", "Cost of Goods Sold", "Gross Profit",
    "Gross Profit Margin (%)", "Operating Expenses", "Net Profit",
    "Net Profit Margin (%)", "Refunds", "Shipping Costs",
    "Payment Processing Fees", "Taxes",
))

GROWTH_METRICS = Table("Growth Metrics", (
    "Date", "Revenue Growth Rate (%)", "Order Growth Rate (%)",
    "Customer Growth Rate (%)", "Average Order Value Growth (%)",
    "Conversion Rate Growth (%)", "Month over Month Growth (%)",
    "Year over Year Growth (%)", "Customer Retention Rate (%)",
    "Market Share Growth (%)", "New Product Launches",
))


WORKBOOKS: Dict[str, Workbook] = {
    "orders": Workbook("orders", "Order Tracking", (
        ORDERS, ORDER_ITEMS, STATUS_HISTORY, SHIPPING_UPDATES, DAILY_SUMMARY,
    )),
    "inventory": Workbook("inventory", "Inventory Management", (
        PRODUCT_INVENTORY, STOCK_MOVEMENTS, INVENTORY_ALERTS,
        SUPPLIER_PERFORMANCE, INVENTORY_FORECASTING,
    )),
    "support": Workbook("support", "Customer Support", (
        SUPPORT_TICKETS, TICKET_UPDATES, SUPPORT_DAILY_METRICS,
        AGENT_PERFORMANCE, CATEGORY_ANALYSIS,
    )),
    "analytics": Workbook("analytics", "User Analytics", (
        USER_ACTIVITIES, CONVERSION_EVENTS, USER_JOURNEYS, FUNNEL_ANALYSIS,
        COHORT_ANALYSIS,
    )),
    "business_intelligence": Workbook("business_intelligence", "Business Intelligence", (
        KPI_DASHBOARD, PRODUCT_PERFORMANCE, CUSTOMER_SEGMENTS,
        FINANCIAL_SUMMARY, GROWTH_METRICS,
    )),
}
