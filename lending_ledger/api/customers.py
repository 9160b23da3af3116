"""
Customer management endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .dependencies import LendingSystem, get_lending_system, page_limit
from .schemas import (
    CreateCustomerRequest,
    UpdateCustomerRequest,
    customer_response,
    loan_response,
    page_response,
    success_response
)
from ..customers import CustomerStatus


router = APIRouter()


@router.get("")
async def list_customers(
    status: Optional[CustomerStatus] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    system: LendingSystem = Depends(get_lending_system)
):
    """List customers, newest first"""
    result = system.customer_manager.list_customers(
        status=status, search=search, page=page, limit=page_limit(limit)
    )
    return page_response(result.map(customer_response))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_customer(
    request: CreateCustomerRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Create a new customer"""
    customer = system.customer_manager.create_customer(
        name=request.name,
        phone=request.phone,
        email=request.email,
        address=request.address.to_address() if request.address else None,
        aadhar_number=request.aadhar_number,
        pan_number=request.pan_number
    )
    return success_response(customer_response(customer), "Customer created successfully")


@router.get("/stats/overview")
async def get_customer_stats(system: LendingSystem = Depends(get_lending_system)):
    """Customer counts by status"""
    return success_response(system.customer_manager.get_customer_stats())


@router.get("/{customer_id}")
async def get_customer(
    customer_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get a customer with their loans"""
    customer = system.customer_manager.get_customer(customer_id)
    loans = system.loan_manager.get_customer_loans(customer.id)
    return success_response({
        "customer": customer_response(customer),
        "loans": [loan_response(loan) for loan in loans]
    })


@router.put("/{customer_id}")
async def update_customer(
    customer_id: str,
    request: UpdateCustomerRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Update customer profile"""
    customer = system.customer_manager.update_customer(
        customer_id,
        name=request.name,
        phone=request.phone,
        email=request.email,
        address=request.address.to_address() if request.address else None,
        aadhar_number=request.aadhar_number,
        pan_number=request.pan_number,
        status=request.status
    )
    return success_response(customer_response(customer), "Customer updated successfully")


@router.delete("/{customer_id}")
async def delete_customer(
    customer_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Delete a customer without active loans"""
    system.customer_manager.delete_customer(customer_id)
    return success_response(message="Customer deleted successfully")
