"""
Order Service

注文を受付から決済検証、発送まで追跡する。
状態は決済サービスと配送サービスからのイベントで進む。
"""

__version__ = "0.1.0"
