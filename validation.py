"""
Request body schemas. Bodies use camelCase keys; services get snake_case.
"""

from datetime import datetime
from typing import List, Literal, Optional

import pydantic
from flask import request
from pydantic import BaseModel, ConfigDict, Field

from exceptions import ValidationError

ROLE_NAME_PATTERN = r'^[a-zA-Z0-9\s]+$'
PRIORITIES = Literal['LOW', 'MEDIUM', 'HIGH', 'URGENT']


class RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore', str_strip_whitespace=True)


class RoleCreate(RequestModel):
    name: str = Field(..., min_length=2, max_length=50, pattern=ROLE_NAME_PATTERN)
    description: Optional[str] = Field(None, max_length=255)
    level: Optional[int] = Field(None, ge=1)
    access_level: Optional[str] = Field(None, alias='accessLevel', max_length=20)
    is_active: bool = Field(True, alias='isActive')
    permission_ids: List[int] = Field(default_factory=list, alias='permissionIds')


class RoleUpdate(RequestModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50, pattern=ROLE_NAME_PATTERN)
    description: Optional[str] = Field(None, max_length=255)
    level: Optional[int] = Field(None, ge=1)
    access_level: Optional[str] = Field(None, alias='accessLevel', max_length=20)
    is_active: Optional[bool] = Field(None, alias='isActive')


class AssignPermissions(RequestModel):
    # An empty list clears the role's permissions
    permission_ids: List[int] = Field(..., alias='permissionIds')


class RechargeIn(RequestModel):
    amount: float = Field(..., gt=0)
    payment_status: Literal['PENDING', 'SUCCESS', 'FAILED'] = Field('SUCCESS', alias='paymentStatus')
    payment_reference: Optional[str] = Field(None, alias='paymentReference', max_length=100)


class ConsumptionIn(RequestModel):
    consumption_kwh: float = Field(..., gt=0, alias='consumptionKWh')
    amount: float = Field(..., gt=0)


class MeterReadingIn(RequestModel):
    voltage_r: Optional[float] = Field(None, alias='voltageR')
    voltage_y: Optional[float] = Field(None, alias='voltageY')
    voltage_b: Optional[float] = Field(None, alias='voltageB')
    current_r: Optional[float] = Field(None, alias='currentR')
    current_y: Optional[float] = Field(None, alias='currentY')
    current_b: Optional[float] = Field(None, alias='currentB')
    rph_power_factor: Optional[float] = Field(None, alias='rphPowerFactor')
    yph_power_factor: Optional[float] = Field(None, alias='yphPowerFactor')
    bph_power_factor: Optional[float] = Field(None, alias='bphPowerFactor')
    neutral_current: Optional[float] = Field(None, alias='neutralCurrent')
    frequency: Optional[float] = None
    kwh: Optional[float] = None
    reading_date: Optional[datetime] = Field(None, alias='readingDate')


class TicketStatusIn(RequestModel):
    status: Literal['OPEN', 'IN_PROGRESS', 'ESCALATED', 'URGENT', 'RESOLVED', 'CLOSED']
    assigned_to: Optional[int] = Field(None, alias='assignedTo')


class AnnouncementIn(RequestModel):
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1)
    priority: PRIORITIES = 'MEDIUM'
    target_roles: List[str] = Field(default_factory=list, alias='targetRoles')


def parse_body(schema):
    """Validate the JSON body against `schema` or raise ValidationError."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError(errors=[{'field': 'body', 'message': 'Request body must be a JSON object'}])
    try:
        return schema.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(errors=[
            {'field': '.'.join(str(part) for part in err['loc']), 'message': err['msg']}
            for err in e.errors()
        ])
