"""In-app notification service for marketplace and payment events"""
import logging

logger = logging.getLogger(__name__)


def format_amount(value):
    """Format LAK/credit amounts with thousands separators"""
    value = value or 0
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.2f}"


class NotificationService:
    """
    Builds Notification rows for the events users care about.

    Notifications are added to the current session and commit together with
    the change that triggered them.
    """

    def __init__(self, db, Notification):
        self.db = db
        self.Notification = Notification

    def notify(self, user_id, notification_type, title, message, link=None,
               project_id=None, order_id=None, related_user_id=None):
        """Queue a single notification for user_id"""
        if not user_id:
            logger.warning(f"Skipping {notification_type} notification without recipient")
            return None

        notification = self.Notification(
            user_id=user_id,
            notification_type=notification_type,
            title=title,
            message=message,
            link=link,
            project_id=project_id,
            order_id=order_id,
            related_user_id=related_user_id
        )
        self.db.session.add(notification)
        return notification

    # Wallet

    def topup_completed(self, user_id, credits, amount):
        return self.notify(
            user_id, 'topup_completed', 'Top-up Completed',
            f"Your top-up of {format_amount(credits)} credits ({format_amount(amount)} LAK) "
            f"has been successfully added to your account.",
            link='/transactions'
        )

    def transaction_approved(self, tx):
        labels = {
            'topup': 'Top-up',
            'subscription': 'Subscription',
            'withdraw_request': 'Withdrawal'
        }
        label = labels.get(tx.type, 'Transaction')
        return self.notify(
            tx.user_id, 'transaction_approved', f'{label} Approved',
            f"Your {label.lower()} of {format_amount(tx.amount)} LAK has been approved.",
            link='/transactions'
        )

    def withdraw_rejected(self, tx):
        return self.notify(
            tx.user_id, 'transaction_rejected', 'Withdrawal Rejected',
            f"Your withdrawal of {format_amount(tx.amount)} LAK was rejected and the amount "
            f"has been returned to your balance.",
            link='/withdraw'
        )

    def transaction_rejected(self, tx):
        if tx.type == 'withdraw_request':
            return self.withdraw_rejected(tx)
        return self.notify(
            tx.user_id, 'transaction_rejected', 'Transaction Rejected',
            f"Your {tx.type} transaction of {format_amount(tx.amount)} LAK was rejected.",
            link='/transactions'
        )

    # Payouts

    def payout_received(self, freelancer_id, amount, title, project_id=None, order_id=None, client_id=None):
        kind = 'project' if project_id else 'order'
        return self.notify(
            freelancer_id, 'payout_received', 'Payment Received',
            f"You received {format_amount(amount)} LAK for {kind} \"{title}\".",
            link='/transactions',
            project_id=project_id,
            order_id=order_id,
            related_user_id=client_id
        )

    def payment_completed(self, client_id, amount, title, project_id=None, order_id=None, freelancer_id=None):
        kind = 'project' if project_id else 'order'
        return self.notify(
            client_id, 'payment_completed', 'Payment Completed',
            f"Your payment of {format_amount(amount)} LAK for {kind} \"{title}\" was completed "
            f"and the funds have been released to the freelancer.",
            link='/transactions',
            project_id=project_id,
            order_id=order_id,
            related_user_id=freelancer_id
        )

    # Proposals

    def proposal_submitted(self, project, proposal):
        self.notify(
            project.client_id, 'proposal_submitted', 'New Proposal Received',
            f"A freelancer has submitted a proposal for your project \"{project.title}\".",
            link=f'/projects/{project.id}/proposals',
            project_id=project.id,
            related_user_id=proposal.freelancer_id
        )
        return self.notify(
            proposal.freelancer_id, 'proposal_submitted', 'Proposal Submitted',
            f"Your proposal for \"{project.title}\" has been submitted successfully. "
            f"{format_amount(proposal.fee_paid)} credits have been deducted.",
            link=f'/proposals/{proposal.id}',
            project_id=project.id
        )

    def proposal_accepted(self, project, proposal):
        return self.notify(
            proposal.freelancer_id, 'proposal_accepted', 'Proposal Accepted',
            f"Your proposal for project \"{project.title}\" has been accepted! "
            f"You can now start working on the project.",
            link=f'/my-projects/{project.id}/progress',
            project_id=project.id,
            related_user_id=project.client_id
        )

    def proposal_rejected(self, project, proposal, refund_amount):
        return self.notify(
            proposal.freelancer_id, 'proposal_rejected', 'Proposal Rejected',
            f"Your proposal for project \"{project.title}\" has been rejected. "
            f"{format_amount(refund_amount)} credits have been refunded to your account.",
            link=f'/proposals/{proposal.id}',
            project_id=project.id,
            related_user_id=project.client_id
        )

    # Project workflow

    def work_submitted(self, project):
        return self.notify(
            project.client_id, 'project_in_review', 'Work Submitted',
            f"The freelancer has submitted work for \"{project.title}\". Please review it.",
            link=f'/my-projects/{project.id}/progress',
            project_id=project.id,
            related_user_id=project.accepted_freelancer_id
        )

    def work_approved(self, project):
        return self.notify(
            project.accepted_freelancer_id, 'project_approved', 'Work Approved',
            f"The client approved your work on \"{project.title}\". Payment is now being processed.",
            link=f'/my-projects/{project.id}/progress',
            project_id=project.id,
            related_user_id=project.client_id
        )

    # Orders

    def order_created(self, order, order_fee, new_balance):
        name = order.package_name or order.catalog_title
        self.notify(
            order.buyer_id, 'order_created', 'Order Placed',
            f"You've placed an order for \"{name}\". {format_amount(order_fee)} credits have been "
            f"deducted. Balance: {format_amount(new_balance)} credits.",
            link=f'/orders/{order.id}',
            order_id=order.id,
            related_user_id=order.seller_id
        )
        return self.notify(
            order.seller_id, 'order_created', 'New Order Received',
            f"You've received a new order for \"{name}\". Please review and accept it.",
            link=f'/orders/{order.id}',
            order_id=order.id,
            related_user_id=order.buyer_id
        )

    def order_status_changed(self, order, new_status, actor_role):
        """Notify the counterparty of actor_role ('client' or 'freelancer')"""
        recipient_id = order.seller_id if actor_role == 'client' else order.buyer_id
        related_user_id = order.buyer_id if actor_role == 'client' else order.seller_id
        name = order.package_name or order.catalog_title

        if new_status == 'accepted':
            notification_type = 'order_accepted'
            title = 'Your Order Was Accepted'
            message = f"Your order \"{name}\" has been accepted and work will begin soon."
        elif new_status == 'in_progress':
            notification_type = 'order_status_changed'
            title = 'Order In Progress'
            if actor_role == 'client':
                message = f"The client requested a revision for order \"{name}\"."
            else:
                message = f"Your order \"{name}\" is now in progress."
        elif new_status == 'delivered':
            notification_type = 'order_delivered'
            title = 'Order Delivered'
            message = f"Your order \"{name}\" has been delivered. Please review it."
        elif new_status == 'awaiting_payment':
            notification_type = 'order_accepted_by_client'
            title = 'Order Accepted by Client'
            message = (f"The client has accepted the delivery for order \"{name}\". "
                       f"Payment is now being processed.")
        elif new_status == 'cancelled':
            notification_type = 'order_cancelled'
            title = 'Order Cancelled'
            message = f"Order \"{name}\" has been cancelled."
        else:
            notification_type = 'order_status_changed'
            title = 'Order Status Updated'
            message = f"Order \"{name}\" status has been updated to {new_status}."

        return self.notify(
            recipient_id, notification_type, title, message,
            link=f'/orders/{order.id}',
            order_id=order.id,
            related_user_id=related_user_id
        )
