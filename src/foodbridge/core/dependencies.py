import boto3
from functools import lru_cache

from foodbridge.core.config import get_settings
from foodbridge.data_access.dynamodb import DynamoDonationStore
from foodbridge.data_access.memory import InMemoryDonationStore
from foodbridge.services.donation_gateway import DonationGateway


@lru_cache()
def get_boto_session() -> boto3.Session:
    settings = get_settings()
    return boto3.Session(
        region_name=settings.AWS_REGION,
        profile_name=settings.AWS_PROFILE
    )

@lru_cache()
def get_donation_store() -> DynamoDonationStore | InMemoryDonationStore:
    settings = get_settings()
    if settings.DONATION_STORE == "memory":
        return InMemoryDonationStore()

    session = get_boto_session()
    dynamo_resource = session.resource('dynamodb', endpoint_url=settings.DYNAMO_ENDPOINT_URL)
    table = dynamo_resource.Table(settings.DYNAMO_TABLE_NAME)
    return DynamoDonationStore(table=table, created_index=settings.DYNAMO_CREATED_INDEX)

@lru_cache()
def get_donation_gateway() -> DonationGateway:
    return DonationGateway(store=get_donation_store())
