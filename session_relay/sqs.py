"""Awaitable wrapper around a boto3 SQS client."""

import asyncio
from typing import Any

import boto3


class SqsClient:
    """Runs blocking boto3 SQS calls in a worker thread."""

    def __init__(self, client: Any = None, region_name: str = None):
        self._client = client or boto3.client("sqs", region_name=region_name)

    async def send_message(self, QueueUrl: str, MessageBody: str) -> dict:
        return await asyncio.to_thread(
            self._client.send_message, QueueUrl=QueueUrl, MessageBody=MessageBody
        )

    async def receive_message(
        self,
        QueueUrl: str,
        MaxNumberOfMessages: int = 1,
        WaitTimeSeconds: int = 0,
        AttributeNames: list[str] = None,
    ) -> dict:
        return await asyncio.to_thread(
            self._client.receive_message,
            QueueUrl=QueueUrl,
            MaxNumberOfMessages=MaxNumberOfMessages,
            WaitTimeSeconds=WaitTimeSeconds,
            AttributeNames=AttributeNames or ["All"],
        )

    async def delete_message(self, QueueUrl: str, ReceiptHandle: str) -> dict:
        return await asyncio.to_thread(
            self._client.delete_message, QueueUrl=QueueUrl, ReceiptHandle=ReceiptHandle
        )
