"""Inventory serverless resources in an account and send them for analysis."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

import requests
from botocore.client import BaseClient

from queueops.errors import ScanUploadError

logger = logging.getLogger(__name__)

Resources = Dict[str, List[Dict[str, Any]]]
ClientFactory = Callable[[str], BaseClient]

UPLOAD_TIMEOUT_SECONDS = 30


def get_lambda_functions(lambda_client: BaseClient) -> Resources:
    functions = []
    for page in lambda_client.get_paginator("list_functions").paginate():
        for fn in page.get("Functions", []):
            functions.append(
                {
                    "functionName": fn["FunctionName"],
                    "arn": fn["FunctionArn"],
                    "runtime": fn.get("Runtime"),
                    "memorySize": fn.get("MemorySize"),
                    "timeout": fn.get("Timeout"),
                    "codeSize": fn.get("CodeSize"),
                    "lastModified": fn.get("LastModified"),
                }
            )
    return {"lambda": functions}


def get_sns_topics(sns: BaseClient) -> Resources:
    topics = []
    for page in sns.get_paginator("list_topics").paginate():
        for topic in page.get("Topics", []):
            arn = topic["TopicArn"]
            topics.append({"arn": arn, "name": arn.rsplit(":", 1)[-1]})
    return {"sns": topics}


def get_sqs_queues(sqs: BaseClient) -> Resources:
    queues = []
    for page in sqs.get_paginator("list_queues").paginate():
        for queue_url in page.get("QueueUrls", []):
            attrs = sqs.get_queue_attributes(QueueUrl=queue_url, AttributeNames=["All"])[
                "Attributes"
            ]
            queues.append(
                {
                    "url": queue_url,
                    "name": queue_url.rsplit("/", 1)[-1],
                    "arn": attrs.get("QueueArn"),
                    "visibilityTimeout": attrs.get("VisibilityTimeout"),
                    "messageRetentionPeriod": attrs.get("MessageRetentionPeriod"),
                    "receiveMessageWaitTimeSeconds": attrs.get("ReceiveMessageWaitTimeSeconds"),
                    "redrivePolicy": attrs.get("RedrivePolicy"),
                    "fifo": attrs.get("FifoQueue") == "true",
                }
            )
    return {"sqs": queues}


def get_dynamodb_tables(dynamodb: BaseClient) -> Resources:
    tables = []
    for page in dynamodb.get_paginator("list_tables").paginate():
        for table_name in page.get("TableNames", []):
            desc = dynamodb.describe_table(TableName=table_name)["Table"]
            tables.append(
                {
                    "tableName": table_name,
                    "arn": desc.get("TableArn"),
                    "status": desc.get("TableStatus"),
                    "billingMode": desc.get("BillingModeSummary", {}).get(
                        "BillingMode", "PROVISIONED"
                    ),
                    "itemCount": desc.get("ItemCount"),
                    "sizeBytes": desc.get("TableSizeBytes"),
                    "streamEnabled": desc.get("StreamSpecification", {}).get(
                        "StreamEnabled", False
                    ),
                }
            )
    return {"dynamodb": tables}


COLLECTORS: Dict[str, Callable[[BaseClient], Resources]] = {
    "lambda": get_lambda_functions,
    "sns": get_sns_topics,
    "sqs": get_sqs_queues,
    "dynamodb": get_dynamodb_tables,
}


def scan(client_factory: ClientFactory) -> Resources:
    """Run every collector concurrently and merge their results."""
    with ThreadPoolExecutor(max_workers=len(COLLECTORS), thread_name_prefix="scan") as executor:
        futures = {
            service: executor.submit(collector, client_factory(service))
            for service, collector in COLLECTORS.items()
        }
        resources: Resources = {}
        for service, future in futures.items():
            resources.update(future.result())
            logger.debug("collected %s %s resources", len(resources[service]), service)
    return resources


def count_resources(resources: Resources) -> int:
    return sum(len(items) for items in resources.values())


def get_account_id(sts: BaseClient) -> str:
    return sts.get_caller_identity()["Account"]


def send_report(
    endpoint: str,
    resources: Resources,
    account_id: str,
    email: str,
    proxies: Optional[Dict[str, str]] = None,
    session: Optional[requests.Session] = None,
) -> None:
    """POST the inventory; raise ScanUploadError if it is not accepted."""
    payload = {"resources": resources, "awsAccountId": account_id, "email": email}
    http = session or requests.Session()
    try:
        resp = http.post(endpoint, json=payload, proxies=proxies, timeout=UPLOAD_TIMEOUT_SECONDS)
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise ScanUploadError(f"Failed to send scan report to {endpoint}: {exc}") from exc
    logger.info("scan report accepted (HTTP %s)", resp.status_code)
