"""
Django models for the AidLink request fulfillment engine.

Requests are funded by supplier contributions, matched against verified
donations through allocations, and delivered over routes tracked by logistics
shipments. Actor ids are opaque strings issued by the identity provider.
"""

from decimal import Decimal

from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Q


# =============================================================================
# Base Model with Audit Fields
# =============================================================================

class AuditedModel(models.Model):
    """
    Abstract base model providing common audit fields.
    All fulfillment tables inherit from this for consistency.
    """
    create_by_id = models.CharField(max_length=64)
    create_dtime = models.DateTimeField(auto_now_add=True)
    update_by_id = models.CharField(max_length=64)
    update_dtime = models.DateTimeField(auto_now=True)
    version_nbr = models.IntegerField(default=1)

    class Meta:
        abstract = True


# =============================================================================
# Warehouses
# =============================================================================

class Warehouse(AuditedModel):
    STATUS_CHOICES = [
        ('A', 'Active'),
        ('I', 'Inactive'),
    ]

    warehouse_id = models.AutoField(primary_key=True)
    name = models.CharField(max_length=120)
    city = models.CharField(max_length=80, null=True, blank=True)
    region = models.CharField(max_length=80, null=True, blank=True)
    address_text = models.CharField(max_length=255, null=True, blank=True)
    capacity = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal('0.00'),
        validators=[MinValueValidator(Decimal('0'))]
    )
    capacity_unit = models.CharField(max_length=20, default='units')
    current_occupancy = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal('0.00'),
        validators=[MinValueValidator(Decimal('0'))]
    )
    status_code = models.CharField(max_length=1, choices=STATUS_CHOICES, default='A')

    class Meta:
        db_table = 'warehouse'
        ordering = ['name']

    def __str__(self):
        return self.name

    @property
    def occupancy_percentage(self) -> float:
        """Derived on read; 0 when the warehouse has no declared capacity."""
        if not self.capacity:
            return 0.0
        return round(float(self.current_occupancy) / float(self.capacity) * 100, 2)


# =============================================================================
# Aid Requests
# =============================================================================

class AidRequest(AuditedModel):
    """
    A recipient's request for aid. Carries the urgency factor inputs, the
    persisted urgency result and the funding status projection.
    Requests are closed by status, never deleted.
    """
    AID_TYPE_CHOICES = [
        ('Education', 'Education'),
        ('Health', 'Health'),
        ('Infrastructure', 'Infrastructure'),
        ('Other', 'Other'),
    ]
    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('approved', 'Approved'),
        ('claimed', 'Claimed'),
        ('completed', 'Completed'),
        ('closed_no_match', 'Closed - No Match'),
        ('cancelled', 'Cancelled'),
    ]
    FUNDING_STATUS_CHOICES = [
        ('unfunded', 'Unfunded'),
        ('partially_funded', 'Partially Funded'),
        ('fully_funded', 'Fully Funded'),
    ]
    URGENCY_LEVEL_CHOICES = [
        ('critical', 'Critical'),
        ('high', 'High'),
        ('medium', 'Medium'),
        ('low', 'Low'),
    ]

    request_id = models.AutoField(primary_key=True)
    recipient_id = models.CharField(max_length=64)
    title = models.CharField(max_length=255)
    description = models.TextField()
    aid_type = models.CharField(max_length=20, choices=AID_TYPE_CHOICES)
    custom_aid_type = models.CharField(max_length=100, null=True, blank=True)
    region = models.CharField(max_length=80, null=True, blank=True)
    quantity_required = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    unit = models.CharField(max_length=30, null=True, blank=True)
    supporting_documents = models.JSONField(default=list, blank=True)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending')
    funding_status = models.CharField(
        max_length=20, choices=FUNDING_STATUS_CHOICES, default='unfunded'
    )

    # Urgency factor inputs
    need_type = models.CharField(max_length=40, null=True, blank=True)
    time_sensitivity = models.CharField(max_length=40, null=True, blank=True)
    recipient_type = models.CharField(max_length=40, null=True, blank=True)
    availability_gap = models.IntegerField(
        default=100,
        validators=[MinValueValidator(0), MaxValueValidator(100)]
    )
    admin_override = models.IntegerField(
        default=0,
        validators=[MinValueValidator(-3), MaxValueValidator(3)]
    )
    vulnerability_score = models.DecimalField(max_digits=5, decimal_places=2, null=True, blank=True)

    # Persisted urgency result
    urgency_score = models.FloatField(default=0.0)
    urgency_level = models.CharField(max_length=10, choices=URGENCY_LEVEL_CHOICES, default='low')
    urgency_calculation_log = models.JSONField(default=dict, blank=True)

    expires_at = models.DateTimeField(null=True, blank=True)
    is_flagged_for_review = models.BooleanField(default=False)
    flagged_at = models.DateTimeField(null=True, blank=True)
    last_audited_at = models.DateTimeField(null=True, blank=True)
    audited_by = models.CharField(max_length=64, null=True, blank=True)

    class Meta:
        db_table = 'aid_request'
        ordering = ['-urgency_score', '-create_dtime']
        indexes = [
            models.Index(fields=['status']),
            models.Index(fields=['recipient_id']),
            models.Index(fields=['expires_at']),
            models.Index(fields=['urgency_score']),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(urgency_score__gte=0) & Q(urgency_score__lte=10),
                name='aid_request_urgency_score_range',
            ),
        ]

    def __str__(self):
        return f"{self.title} ({self.status})"


# =============================================================================
# Contributions
# =============================================================================

class Contribution(AuditedModel):
    """
    A supplier's percentage commitment toward a request.
    At most one row per (request, supplier); committed rows are never edited.
    """
    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('committed', 'Committed'),
    ]

    contribution_id = models.AutoField(primary_key=True)
    request = models.ForeignKey(
        AidRequest, on_delete=models.PROTECT, related_name='contributions'
    )
    supplier_id = models.CharField(max_length=64)
    percentage = models.IntegerField(
        validators=[MinValueValidator(1), MaxValueValidator(100)]
    )
    amount_value = models.DecimalField(max_digits=15, decimal_places=2, null=True, blank=True)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default='committed')
    notes_text = models.TextField(null=True, blank=True)

    class Meta:
        db_table = 'contribution'
        ordering = ['contribution_id']
        constraints = [
            models.UniqueConstraint(
                fields=['request', 'supplier_id'],
                name='contribution_request_supplier_uniq',
            ),
            models.CheckConstraint(
                condition=Q(percentage__gte=1) & Q(percentage__lte=100),
                name='contribution_percentage_range',
            ),
        ]
        indexes = [
            models.Index(fields=['supplier_id']),
        ]

    def __str__(self):
        return f"Request {self.request_id}: {self.supplier_id} {self.percentage}%"


# =============================================================================
# Donations
# =============================================================================

class Donation(AuditedModel):
    TYPE_CHOICES = [
        ('Goods', 'Goods'),
        ('Monetary', 'Monetary'),
        ('Services', 'Services'),
    ]
    STATUS_CHOICES = [
        ('Pending', 'Pending'),
        ('Verified', 'Verified'),
        ('Allocated', 'Allocated'),
        ('Delivered', 'Delivered'),
        ('Rejected', 'Rejected'),
        ('Unavailable', 'Unavailable'),
    ]
    PRICE_STATUS_CHOICES = [
        ('Estimated', 'Estimated'),
        ('Locked', 'Locked'),
    ]

    donation_id = models.AutoField(primary_key=True)
    supplier_id = models.CharField(max_length=64)
    aid_request = models.ForeignKey(
        AidRequest,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='targeted_donations'
    )
    donation_type = models.CharField(max_length=10, choices=TYPE_CHOICES, default='Goods')
    item = models.CharField(max_length=255)
    description = models.TextField(null=True, blank=True)
    unit = models.CharField(max_length=50)
    quantity = models.DecimalField(
        max_digits=12, decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))]
    )
    remaining_quantity = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(max_length=12, choices=STATUS_CHOICES, default='Pending')
    warehouse = models.ForeignKey(
        Warehouse, on_delete=models.PROTECT, null=True, blank=True, related_name='donations'
    )
    value = models.DecimalField(max_digits=15, decimal_places=2, null=True, blank=True)
    audited_price = models.DecimalField(max_digits=15, decimal_places=2, null=True, blank=True)
    price_status = models.CharField(
        max_length=10, choices=PRICE_STATUS_CHOICES, default='Estimated'
    )
    audited_by = models.CharField(max_length=64, null=True, blank=True)
    locked_at = models.DateTimeField(null=True, blank=True)
    expiry_date = models.DateField(null=True, blank=True)
    notes_text = models.TextField(null=True, blank=True)

    class Meta:
        db_table = 'donation'
        ordering = ['-create_dtime']
        indexes = [
            models.Index(fields=['status']),
            models.Index(fields=['supplier_id']),
            models.Index(fields=['expiry_date']),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(remaining_quantity__gte=0),
                name='donation_remaining_quantity_non_negative',
            ),
        ]

    def __str__(self):
        return f"{self.item} x{self.quantity} ({self.status})"


# =============================================================================
# Allocation & Delivery
# =============================================================================

class Allocation(AuditedModel):
    """Binds a quantity of one donation to one request."""
    STATUS_CHOICES = [
        ('Pending', 'Pending'),
        ('Approved', 'Approved'),
        ('In Transit', 'In Transit'),
        ('Delivered', 'Delivered'),
        ('Cancelled', 'Cancelled'),
    ]

    allocation_id = models.AutoField(primary_key=True)
    request = models.ForeignKey(
        AidRequest, on_delete=models.PROTECT, related_name='allocations'
    )
    donation = models.ForeignKey(
        Donation, on_delete=models.PROTECT, related_name='allocations'
    )
    allocated_by = models.CharField(max_length=64)
    quantity_allocated = models.DecimalField(
        max_digits=12, decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))]
    )
    status = models.CharField(max_length=12, choices=STATUS_CHOICES, default='Pending')
    notes_text = models.TextField(null=True, blank=True)
    allocated_date = models.DateTimeField()
    expected_delivery_date = models.DateField(null=True, blank=True)
    actual_delivery_date = models.DateField(null=True, blank=True)

    class Meta:
        db_table = 'allocation'
        ordering = ['-allocated_date']
        indexes = [
            models.Index(fields=['status']),
            models.Index(fields=['allocated_by']),
        ]

    def __str__(self):
        return f"Allocation {self.allocation_id} ({self.status})"


class DeliveryRoute(AuditedModel):
    STATUS_CHOICES = [
        ('Scheduled', 'Scheduled'),
        ('In Transit', 'In Transit'),
        ('Delivered', 'Delivered'),
        ('Cancelled', 'Cancelled'),
    ]

    delivery_route_id = models.AutoField(primary_key=True)
    route_name = models.CharField(max_length=120)
    warehouse = models.ForeignKey(
        Warehouse, on_delete=models.PROTECT, related_name='delivery_routes'
    )
    # Optional direct link; routes may reach their allocation only via logistics.
    allocation = models.ForeignKey(
        Allocation,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='delivery_routes'
    )
    destination_region = models.CharField(max_length=80, null=True, blank=True)
    destination_city = models.CharField(max_length=80, null=True, blank=True)
    destination_address = models.CharField(max_length=255, null=True, blank=True)
    distance_km = models.DecimalField(max_digits=8, decimal_places=2, null=True, blank=True)
    estimated_duration_minutes = models.IntegerField(null=True, blank=True)
    status = models.CharField(max_length=12, choices=STATUS_CHOICES, default='Scheduled')
    scheduled_date = models.DateTimeField(null=True, blank=True)
    actual_departure_date = models.DateTimeField(null=True, blank=True)
    actual_arrival_date = models.DateTimeField(null=True, blank=True)
    driver_id = models.CharField(max_length=64, null=True, blank=True)
    vehicle_id = models.CharField(max_length=40, null=True, blank=True)
    notes_text = models.TextField(null=True, blank=True)

    class Meta:
        db_table = 'delivery_route'
        ordering = ['-scheduled_date', '-delivery_route_id']
        indexes = [
            models.Index(fields=['status']),
            models.Index(fields=['driver_id']),
        ]

    def __str__(self):
        return f"{self.route_name} ({self.status})"


class Logistic(AuditedModel):
    """A shipment record. One route may carry several shipments."""
    STATUS_CHOICES = DeliveryRoute.STATUS_CHOICES

    logistic_id = models.AutoField(primary_key=True)
    allocation = models.ForeignKey(
        Allocation,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='logistics'
    )
    delivery_route = models.ForeignKey(
        DeliveryRoute,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='logistics'
    )
    tracking_number = models.CharField(max_length=40, unique=True)
    status = models.CharField(max_length=12, choices=STATUS_CHOICES, default='Scheduled')
    estimated_value = models.DecimalField(max_digits=15, decimal_places=2, null=True, blank=True)
    delivery_notes = models.TextField(null=True, blank=True)
    # Ordered, append-only [{latitude, longitude, timestamp}, ...]
    location_updates = models.JSONField(default=list, blank=True)
    last_location_update = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'logistic'
        ordering = ['-logistic_id']
        indexes = [
            models.Index(fields=['status']),
        ]

    def __str__(self):
        return f"{self.tracking_number} ({self.status})"


# =============================================================================
# Audit Trail
# =============================================================================

class FulfillmentAudit(models.Model):
    """
    Append-only audit trail of fulfillment state changes.
    Rows are written by the service layer and never updated.
    """
    ENTITY_CHOICES = [
        ('AID_REQUEST', 'Aid Request'),
        ('CONTRIBUTION', 'Contribution'),
        ('DONATION', 'Donation'),
        ('ALLOCATION', 'Allocation'),
        ('DELIVERY_ROUTE', 'Delivery Route'),
        ('LOGISTIC', 'Logistic'),
    ]

    audit_id = models.AutoField(primary_key=True)
    entity_type = models.CharField(max_length=20, choices=ENTITY_CHOICES)
    entity_id = models.IntegerField()
    action_type = models.CharField(max_length=40)
    old_value = models.JSONField(null=True, blank=True)
    new_value = models.JSONField(null=True, blank=True)
    notes_text = models.TextField(null=True, blank=True)
    actor_user_id = models.CharField(max_length=64, null=True, blank=True)
    action_dtime = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'fulfillment_audit'
        ordering = ['-action_dtime', '-audit_id']
        indexes = [
            models.Index(fields=['entity_type', 'entity_id']),
        ]

    def __str__(self):
        return f"{self.entity_type}:{self.entity_id} {self.action_type}"
