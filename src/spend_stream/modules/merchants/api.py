from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from spend_stream.api.deps import get_current_user
from spend_stream.core.db import db_session
from spend_stream.modules.identity.models import User
from spend_stream.modules.merchants.schemas import (
    MerchantMappingCreateIn,
    MerchantMappingOut,
    MerchantMappingUpdateIn,
    MerchantMappingWriteOut,
)
from spend_stream.modules.merchants.service import (
    apply_mapping_to_expenses,
    create_merchant_mapping,
    delete_merchant_mapping,
    get_merchant_mapping,
    list_merchant_mappings,
    update_merchant_mapping,
)

router = APIRouter(tags=["merchant-mappings"])


@router.get("/merchant-mappings", response_model=list[MerchantMappingOut])
def list_mappings_endpoint(
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[MerchantMappingOut]:
    return [
        MerchantMappingOut.model_validate(m, from_attributes=True)
        for m in list_merchant_mappings(session, user_id=user.id)
    ]


@router.post(
    "/merchant-mappings",
    response_model=MerchantMappingWriteOut,
    status_code=status.HTTP_201_CREATED,
)
def create_mapping_endpoint(
    payload: MerchantMappingCreateIn,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> MerchantMappingWriteOut:
    created = create_merchant_mapping(
        session, user_id=user.id, merchant=payload.merchant_name, category=payload.category
    )
    if not created:
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Merchant mapping already exists"
        )
    updated = 0
    if payload.apply_to_existing:
        updated = apply_mapping_to_expenses(
            session, user_id=user.id, merchant=payload.merchant_name, category=payload.category
        )
    session.commit()
    mapping = get_merchant_mapping(session, user_id=user.id, merchant=payload.merchant_name)
    return MerchantMappingWriteOut(
        mapping=MerchantMappingOut.model_validate(mapping, from_attributes=True),
        updated_count=updated,
    )


@router.put("/merchant-mappings/{merchant_name}", response_model=MerchantMappingWriteOut)
def update_mapping_endpoint(
    merchant_name: str,
    payload: MerchantMappingUpdateIn,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> MerchantMappingWriteOut:
    mapping = update_merchant_mapping(
        session, user_id=user.id, merchant=merchant_name, category=payload.category
    )
    updated = 0
    if payload.apply_to_existing:
        updated = apply_mapping_to_expenses(
            session, user_id=user.id, merchant=merchant_name, category=payload.category
        )
    session.commit()
    session.refresh(mapping)
    return MerchantMappingWriteOut(
        mapping=MerchantMappingOut.model_validate(mapping, from_attributes=True),
        updated_count=updated,
    )


@router.delete("/merchant-mappings/{merchant_name}")
def delete_mapping_endpoint(
    merchant_name: str,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> Response:
    delete_merchant_mapping(session, user_id=user.id, merchant=merchant_name)
    return Response(status_code=204)
